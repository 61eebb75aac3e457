"""Reconciles training provider notifications with stored job state.

Notifications may arrive duplicated or out of order. Each one is stored in its
own transaction and then, for a job that just succeeded without an IP id,
derivative registration is dispatched as a background task so the webhook can
be acknowledged right away.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

import structlog

from ipforge.core.timezone import utcnow
from ipforge.models.training_job import (
    DuplicateNotification,
    NotificationAfterFinalState,
    NotificationOutOfOrder,
    TrainingJob,
    TrainingJobStatus,
)
from ipforge.services.webhook.notification import TrainingNotification

logger = structlog.get_logger()


class ReconcileAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    IGNORED_DUPLICATE = "ignored_duplicate"
    IGNORED_AFTER_FINAL_STATE = "ignored_after_final_state"
    IGNORED_OUT_OF_ORDER = "ignored_out_of_order"


@dataclass
class ReconcileResult:
    action: ReconcileAction
    job_id: UUID
    external_id: str
    status: TrainingJobStatus
    registration_scheduled: bool = False

    @property
    def ignored(self) -> bool:
        return self.action not in (ReconcileAction.CREATED, ReconcileAction.UPDATED)


_IGNORED_ACTIONS = {
    DuplicateNotification: ReconcileAction.IGNORED_DUPLICATE,
    NotificationAfterFinalState: ReconcileAction.IGNORED_AFTER_FINAL_STATE,
    NotificationOutOfOrder: ReconcileAction.IGNORED_OUT_OF_ORDER,
}


class WebhookReconciler:
    """Applies notifications to TrainingJob rows and triggers registration."""

    def __init__(self, uow_factory, engine=None):
        """
        Args:
            uow_factory: Factory returning UnitOfWork instances
            engine: RegistrationEngine used for background registration
                (None disables registration, e.g. when Story is not configured)
        """
        self.uow_factory = uow_factory
        self.engine = engine
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending_registrations(self) -> int:
        return len(self._tasks)

    async def handle_notification(self, notification: TrainingNotification) -> ReconcileResult:
        """Store a notification and schedule registration when appropriate.

        Returns once the notification is committed; registration (if any)
        continues in the background.
        """
        log = logger.bind(external_id=notification.id, status=notification.status.value)

        async with await self.uow_factory() as uow:
            job, created = await uow.training_jobs.upsert_on_notification(
                notification.id, notification.status
            )

            if not created:
                previous = job.status
                try:
                    job.transition_to(notification.status)
                except (
                    DuplicateNotification,
                    NotificationAfterFinalState,
                    NotificationOutOfOrder,
                ) as e:
                    action = _IGNORED_ACTIONS[type(e)]
                    log.info(
                        "webhook.notification_ignored",
                        job_id=str(job.id),
                        action=action.value,
                        stored_status=TrainingJobStatus(previous).value,
                    )
                    return ReconcileResult(
                        action=action,
                        job_id=job.id,
                        external_id=notification.id,
                        status=TrainingJobStatus(previous),
                    )

            self._apply_notification(job, notification)
            await uow.training_jobs.save(job)

            job_id = job.id
            should_register = job.status == TrainingJobStatus.SUCCEEDED and not job.ip_id

        action = ReconcileAction.CREATED if created else ReconcileAction.UPDATED
        log.info("webhook.notification_stored", job_id=str(job_id), action=action.value)

        scheduled = self.schedule_registration(job_id) if should_register else False

        return ReconcileResult(
            action=action,
            job_id=job_id,
            external_id=notification.id,
            status=notification.status,
            registration_scheduled=scheduled,
        )

    def _apply_notification(self, job: TrainingJob, notification: TrainingNotification) -> None:
        """Copy notification fields onto the job; absent fields keep stored values."""
        inputs = notification.input
        if inputs.trigger_word:
            job.trigger_word = inputs.trigger_word
        if inputs.input_images:
            job.input_images_url = inputs.input_images
        if inputs.captioning:
            job.captioning = inputs.captioning
        if inputs.step_count is not None:
            job.training_steps = inputs.step_count

        if notification.logs is not None:
            job.logs = notification.logs
        if notification.started_at is not None:
            job.started_at = notification.started_at
        if notification.metrics.predict_time is not None:
            job.predict_time = notification.metrics.predict_time
        if notification.metrics.total_time is not None:
            job.total_time = notification.metrics.total_time

        if notification.status == TrainingJobStatus.SUCCEEDED:
            if notification.output:
                job.output_model_url = notification.output
            job.completed_at = notification.completed_at or job.completed_at or utcnow()
        elif notification.status in (TrainingJobStatus.FAILED, TrainingJobStatus.CANCELED):
            job.error_message = notification.error or f"Training {notification.status.value}"
            job.completed_at = notification.completed_at or job.completed_at or utcnow()

    def schedule_registration(self, job_id: UUID) -> bool:
        """Start registration for a succeeded job in the background.

        Returns:
            False when registration is disabled, True once the task is running
        """
        if self.engine is None:
            logger.warning("webhook.registration_skipped", job_id=str(job_id), reason="disabled")
            return False
        self._dispatch_registration(job_id)
        return True

    def _dispatch_registration(self, job_id: UUID) -> None:
        task = asyncio.create_task(self._register(job_id), name=f"register-derivative-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_registration_done)
        logger.info("webhook.registration_scheduled", job_id=str(job_id))

    async def _register(self, job_id: UUID):
        return await self.engine.register_job_as_derivative(job_id)

    def _on_registration_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("webhook.registration_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "webhook.registration_crashed",
                task=task.get_name(),
                error=str(exc),
                exc_type=type(exc).__name__,
            )
            return
        outcome = task.result()
        logger.info(
            "webhook.registration_finished",
            job_id=str(outcome.job_id),
            outcome=outcome.kind.value,
            ip_id=outcome.ip_id,
        )

    async def drain(self) -> None:
        """Wait for all in-flight background registrations to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
