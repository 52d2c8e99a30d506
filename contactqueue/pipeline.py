"""Per-item processing: fetch, validate, write back, record the outcome."""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from .collaborators import Collaborators
from .errors import MalformedItemError, SubjectNotFoundError, SubmissionMismatchError
from .models import (
    ItemOutcome,
    QueueItem,
    ValidationOutcome,
    ValidationSuccess,
    ValidationType,
)
from .queue import ItemQueue
from .settings import Settings
from .validations import (
    ValidationTask,
    build_output_fields,
    failure,
    generate_check_id,
    outcome_to_json,
    select_validations,
)

logger = logging.getLogger(__name__)

PARTIAL_SUBMISSION = "partial_submission"


class ItemPipeline:
    """Drives one queue item to completed, retry-pending or failed.

    ``process`` never raises for item-level problems: every failure becomes
    a state transition through ``ItemQueue.mark_failed``.
    """

    def __init__(self, queue: ItemQueue, collaborators: Collaborators, settings: Settings):
        self.queue = queue
        self.collaborators = collaborators
        self.settings = settings

    async def process(self, item: QueueItem) -> ItemOutcome:
        start = time.monotonic()
        logger.debug(f"Processing queue item {item.id} (event {item.event_id}, attempts {item.attempts})")

        try:
            item = await self.queue.mark_processing(item)
            context = await self._load_context(item)

            tasks = select_validations(item.flags, context)
            outcomes = await self._run_validations(item, tasks, context)

            epoch_ms = int(time.time() * 1000)
            fields = build_output_fields(
                outcomes,
                context,
                prefix=self.settings.output_field_prefix,
                check_id=generate_check_id(item.client_id, epoch_ms, self.settings.check_version),
                epoch_ms=epoch_ms,
            )
            response, warning = await self._submit(item, fields)

            await self._record_usage(item.client_id, outcomes)
            await self.queue.mark_completed(
                item,
                validation_results={vt.value: outcome_to_json(o) for vt, o in outcomes.items()},
                submission_response=response,
                warning=warning,
            )
        except Exception as e:
            processing_time = time.monotonic() - start
            logger.error(
                f"Failed to process queue item {item.id} (event {item.event_id}, "
                f"attempts {item.attempts}): {e}"
            )
            await self._record_failure(item, e)
            return ItemOutcome(
                item_id=item.id,
                success=False,
                error=str(e) or type(e).__name__,
                processing_time=processing_time,
            )

        processing_time = time.monotonic() - start
        logger.info(f"Queue item {item.id} processed in {processing_time:.2f}s")
        return ItemOutcome(
            item_id=item.id,
            success=True,
            warning=warning,
            processing_time=processing_time,
        )

    async def _load_context(self, item: QueueItem) -> Dict[str, Any]:
        if not item.subject_id:
            raise MalformedItemError(f"Queue item {item.id} has no subject id")
        if item.contact_data is not None:
            return item.contact_data

        contact = await self.collaborators.crm.fetch_context(item.subject_id, item.client_id)
        if contact is None:
            raise SubjectNotFoundError(item.subject_id)

        # Persisted before validation so a retry does not refetch.
        await self.queue.cache_contact_data(item, contact)
        return contact

    async def _run_validations(
        self,
        item: QueueItem,
        tasks: List[ValidationTask],
        context: Dict[str, Any],
    ) -> Dict[ValidationType, ValidationOutcome]:
        async def run(task: ValidationTask) -> ValidationOutcome:
            validator = self.collaborators.validators.get(task.type)
            if validator is None:
                return failure(task.type, LookupError(f"no {task.type.value} validator configured"))
            try:
                data = await validator(task.build_input(context), item.client_id)
                return ValidationSuccess(type=task.type, data=data or {})
            except Exception as e:
                logger.error(f"{task.type.value.capitalize()} validation failed for item {item.id}: {e}")
                return failure(task.type, e)

        results = await asyncio.gather(*(run(task) for task in tasks))
        return {outcome.type: outcome for outcome in results}

    async def _submit(self, item: QueueItem, fields: Dict[str, str]) -> Tuple[Dict[str, Any], Optional[str]]:
        try:
            response = await self.collaborators.crm.submit(fields, item.subject_id, item.client_id)
        except SubmissionMismatchError as e:
            logger.warning(
                f"Field mismatch submitting item {item.id} to contact {item.subject_id}, "
                f"some fields may not have been written: {e}"
            )
            return {"success": True, "warning": PARTIAL_SUBMISSION, "detail": str(e)}, PARTIAL_SUBMISSION
        return response or {"success": True}, None

    async def _record_usage(self, client_id: str, outcomes: Dict[ValidationType, ValidationOutcome]) -> None:
        usage = self.collaborators.usage
        if usage is None:
            return

        async def increment(vt: ValidationType) -> None:
            try:
                await usage.increment_usage(client_id, vt)
            except Exception as e:
                logger.error(f"Failed to update {vt.value} usage for client {client_id}: {e}")

        await asyncio.gather(*(increment(vt) for vt, outcome in outcomes.items() if outcome.ok))

    async def _record_failure(self, item: QueueItem, error: Exception) -> None:
        try:
            await self.queue.mark_failed(item, error)
        except Exception as e:
            logger.error(f"Could not record failure for item {item.id}: {e}", exc_info=True)
