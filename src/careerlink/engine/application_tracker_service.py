from __future__ import annotations

import logging
from typing import Optional

from careerlink.core.errors import IllegalTransition, Unauthorized
from careerlink.core.identity import IdentityProvider
from careerlink.core.state import Application, Job, NoticeDraft, QueuedNotice, TransitionResult
from careerlink.engine.application_tracker_schema import (
    ADMIN_TARGETS,
    APPLICANT_TARGETS,
    TransitionRequest,
    is_legal,
)
from careerlink.services.notification_service import NotificationService, application_event_key

log = logging.getLogger("engine")


class ApplicationTrackerService:
    """
    Description: Status transition engine for job applications.
    Layer: L2
    Input: TransitionRequest (application_id, requested_status, actor_id)
    Output: committed status + at most one notification per (application, status)
    """

    def __init__(self, store, identity: IdentityProvider, notifications: NotificationService) -> None:
        self.store = store
        self.identity = identity
        self.notifications = notifications

    def submit(
        self,
        *,
        job_id: str,
        applicant_id: str,
        cover_note: Optional[str] = None,
        resume_id: Optional[str] = None,
    ) -> Application:
        """
        Description: Create an application in 'applied'.
        Layer: L2
        Input: job_id + applicant_id (+ cover note, resume reference)
        Output: Application (DuplicateEntity on second submit)
        """
        app = self.store.create_application(
            job_id=job_id, applicant_id=applicant_id, cover_note=cover_note, resume_id=resume_id
        )
        log.info("Application %s submitted by %s for job %s", app.id, applicant_id, job_id)
        return app

    def _authorize(self, *, app: Application, job: Job, requested: str, actor_id: str) -> None:
        if requested in ADMIN_TARGETS:
            if not self.identity.is_company_admin(actor_id=actor_id, company_id=job.company_id):
                raise Unauthorized(f"Only administrators of the hiring company can set '{requested}'")
            return
        if requested in APPLICANT_TARGETS:
            if actor_id != app.applicant_id:
                raise Unauthorized("Only the applicant can withdraw an application")
            return
        # No actor may move an application into any other status (e.g. back to 'applied').
        raise IllegalTransition(current=app.status, requested=requested)

    def _build_notice(self, *, app: Application, job: Job, requested: str) -> Optional[QueuedNotice]:
        try:
            return self.notifications.application_notice(application=app, job=job, new_status=requested)
        except Exception:
            log.exception(
                "Notice construction failed for event %s; queued for rebuild by the retry worker",
                application_event_key(app.id, requested),
            )
            return self.notifications.deferred_application_notice(application=app, new_status=requested)

    def transition(
        self,
        *,
        application_id: str,
        requested_status: str,
        actor_id: str,
        expected_status: Optional[str] = None,
    ) -> TransitionResult:
        """
        Description: Validate authority and legality, then commit under the entity lock.
        Layer: L2
        Input: application_id + requested_status + actor_id (+ expected_status)
        Output: TransitionResult; changed=False when already in the target state

        Raises Unauthorized / IllegalTransition without writing anything.
        """
        app = self.store.get_application(application_id)
        job = self.store.get_job(app.job_id)
        try:
            self._authorize(app=app, job=job, requested=requested_status, actor_id=actor_id)
        except (Unauthorized, IllegalTransition) as e:
            log.info("Transition %s -> %s by %s rejected: %s", application_id, requested_status, actor_id, e.reason)
            raise

        with self.store.lock_for(application_id):
            app = self.store.get_application(application_id)
            current = app.status

            if current == requested_status:
                return self._noop(app)

            if (expected_status is not None and expected_status != current) or not is_legal(current, requested_status):
                log.info("Illegal transition %s: %s -> %s by %s", application_id, current, requested_status, actor_id)
                raise IllegalTransition(current=current, requested=requested_status)

            notice = self._build_notice(app=app, job=job, requested=requested_status)
            moved = self.store.compare_and_set_application_status(
                application_id=application_id,
                expected=current,
                new=requested_status,
                actor_id=actor_id,
                notice=notice,
            )
            if not moved:
                # Another writer (another process) won the conditional update.
                latest = self.store.get_application(application_id)
                if latest.status == requested_status:
                    return self._noop(latest)
                raise IllegalTransition(current=latest.status, requested=requested_status)

        log.info("Application %s: %s -> %s by %s", application_id, current, requested_status, actor_id)

        notification = self.notifications.flush(notice) if isinstance(notice, NoticeDraft) else None
        return TransitionResult(
            entity_id=application_id,
            previous_status=current,
            status=requested_status,
            changed=True,
            notification_id=notification.id if notification else None,
            delivery_pending=notice is not None and notification is None,
        )

    def apply(self, request: TransitionRequest) -> TransitionResult:
        return self.transition(
            application_id=request.application_id,
            requested_status=request.requested_status,
            actor_id=request.actor_id,
            expected_status=request.expected_status,
        )

    def _noop(self, app: Application) -> TransitionResult:
        existing = self.store.get_notification_for_event(
            event_key=application_event_key(app.id, app.status), recipient_id=app.applicant_id
        )
        log.info("Application %s already '%s'; idempotent no-op", app.id, app.status)
        return TransitionResult(
            entity_id=app.id,
            previous_status=app.status,
            status=app.status,
            changed=False,
            notification_id=existing.id if existing else None,
        )
