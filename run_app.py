from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path


def main() -> int:
    """
    Description: Launch the CareerLink API locally under uvicorn.
    Layer: L0
    Input: CAREERLINK_HOST / CAREERLINK_PORT (optional)
    Output: exit code
    """
    root = Path(__file__).resolve().parent
    host = os.environ.get("CAREERLINK_HOST", "127.0.0.1")
    port = os.environ.get("CAREERLINK_PORT", "8000")

    api_cmd = [
        sys.executable, "-m", "uvicorn",
        "careerlink.api.main:app",
        "--host", host,
        "--port", port,
    ]

    print("\n== CareerLink Local Launcher ==")
    print(f"API: http://{host}:{port}/health  | docs: http://{host}:{port}/docs")
    print(f"WS : ws://{host}:{port}/ws/notifications?actor_id=<user>\n")

    print("Starting FastAPI:", " ".join(api_cmd))
    try:
        return subprocess.call(api_cmd, cwd=str(root))
    except KeyboardInterrupt:
        print("\nStopping…")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
