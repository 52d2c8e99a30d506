"""Tests for per-item processing."""

import asyncio
from datetime import timedelta

import pytest

from conftest import CONTACT, FakeCrm, FakeUsage, FakeValidator, default_validators, make_collaborators
from contactqueue.errors import SubmissionMismatchError, TransientError
from contactqueue.models import ItemStatus, ValidationFlags, ValidationType, utcnow
from contactqueue.pipeline import PARTIAL_SUBMISSION, ItemPipeline
from contactqueue.queue import compute_backoff

ALL_FLAGS = ValidationFlags(email=True, name=True, phone=True, address=True)


async def enqueue_item(queue, storage, subject_id="101", flags=ALL_FLAGS, **kwargs):
    result = await queue.enqueue("evt1", subject_id, "0001", flags, **kwargs)
    return await storage.get_item(result.id)


@pytest.mark.asyncio
async def test_successful_item_is_completed_with_payload(queue, storage, settings):
    crm = FakeCrm({"101": dict(CONTACT)})
    usage = FakeUsage()
    pipeline = ItemPipeline(queue, make_collaborators(crm=crm, usage=usage), settings)
    item = await enqueue_item(queue, storage)

    outcome = await pipeline.process(item)

    assert outcome.success is True
    assert outcome.error is None
    stored = await storage.get_item(item.id)
    assert stored.status == ItemStatus.COMPLETED
    assert stored.processing_completed_at is not None
    assert stored.submission_response == {"success": True, "status": 204}
    assert set(stored.validation_results) == {"email", "name", "phone", "address"}
    assert all(result["ok"] for result in stored.validation_results.values())

    assert len(crm.submissions) == 1
    fields = crm.submissions[0]["fields"]
    assert fields["um_email_status"] == "Valid"
    assert fields["um_name"] == "Jane Doe"
    assert fields["um_phone_type"] == "landline"
    assert fields["um_state_province"] == "IL"
    assert "um_check_id" in fields
    assert "date_last_um_check_epoch" in fields
    assert len(usage.calls) == 4


@pytest.mark.asyncio
async def test_contact_context_is_cached_across_attempts(queue, storage, settings):
    crm = FakeCrm({"101": dict(CONTACT)}, submit_error=TransientError("CRM 503"))
    pipeline = ItemPipeline(queue, make_collaborators(crm=crm), settings)
    item = await enqueue_item(queue, storage)

    first = await pipeline.process(item)
    assert first.success is False
    stored = await storage.get_item(item.id)
    assert stored.status == ItemStatus.PENDING
    assert stored.contact_data == CONTACT

    crm.submit_error = None
    second = await pipeline.process(stored)

    assert second.success is True
    assert crm.fetch_calls == ["101"]
    assert (await storage.get_item(item.id)).status == ItemStatus.COMPLETED


@pytest.mark.asyncio
async def test_missing_subject_fails_without_retry(queue, storage, settings):
    crm = FakeCrm({})
    pipeline = ItemPipeline(queue, make_collaborators(crm=crm), settings)
    item = await enqueue_item(queue, storage, subject_id="999")

    outcome = await pipeline.process(item)

    assert outcome.success is False
    stored = await storage.get_item(item.id)
    assert stored.status == ItemStatus.FAILED
    assert stored.attempts == 1
    assert stored.next_retry_at is None
    assert stored.error_details["name"] == "SubjectNotFoundError"
    assert crm.submissions == []


@pytest.mark.asyncio
async def test_item_without_subject_is_malformed(queue, storage, settings):
    crm = FakeCrm({"101": dict(CONTACT)})
    pipeline = ItemPipeline(queue, make_collaborators(crm=crm), settings)
    item = await enqueue_item(queue, storage, subject_id=None, contact_data=dict(CONTACT))

    outcome = await pipeline.process(item)

    assert outcome.success is False
    stored = await storage.get_item(item.id)
    assert stored.status == ItemStatus.FAILED
    assert stored.error_details["name"] == "MalformedItemError"
    assert crm.fetch_calls == []


@pytest.mark.asyncio
async def test_one_failing_validator_does_not_fail_the_item(queue, storage, settings):
    validators = default_validators()
    validators[ValidationType.EMAIL] = FakeValidator(error=TransientError("email provider down"))
    crm = FakeCrm({"101": dict(CONTACT)})
    usage = FakeUsage()
    pipeline = ItemPipeline(queue, make_collaborators(crm=crm, validators=validators, usage=usage), settings)
    item = await enqueue_item(queue, storage)

    outcome = await pipeline.process(item)

    assert outcome.success is True
    stored = await storage.get_item(item.id)
    assert stored.status == ItemStatus.COMPLETED
    assert stored.validation_results["email"] == {
        "ok": False,
        "type": "email",
        "error": "email provider down",
    }
    fields = crm.submissions[0]["fields"]
    assert "um_email_status" not in fields
    assert fields["um_phone_status"] == "Valid"
    assert sorted(vt.value for _, vt in usage.calls) == ["address", "name", "phone"]


@pytest.mark.asyncio
async def test_usage_errors_are_logged_not_raised(queue, storage, settings):
    pipeline = ItemPipeline(queue, make_collaborators(usage=FakeUsage(error=RuntimeError("db down"))), settings)
    item = await enqueue_item(queue, storage)

    outcome = await pipeline.process(item)

    assert outcome.success is True
    assert (await storage.get_item(item.id)).status == ItemStatus.COMPLETED


@pytest.mark.asyncio
async def test_absent_fields_are_not_validated(queue, storage, settings):
    contact = {"email": "jane@example.com", "phone": ""}
    validators = default_validators()
    crm = FakeCrm({"101": contact})
    pipeline = ItemPipeline(queue, make_collaborators(crm=crm, validators=validators), settings)
    item = await enqueue_item(queue, storage)

    await pipeline.process(item)

    assert len(validators[ValidationType.EMAIL].calls) == 1
    assert validators[ValidationType.PHONE].calls == []
    assert validators[ValidationType.NAME].calls == []
    assert validators[ValidationType.ADDRESS].calls == []
    stored = await storage.get_item(item.id)
    assert set(stored.validation_results) == {"email"}


@pytest.mark.asyncio
async def test_unrequested_validations_are_skipped(queue, storage, settings):
    validators = default_validators()
    pipeline = ItemPipeline(queue, make_collaborators(validators=validators), settings)
    item = await enqueue_item(queue, storage, flags=ValidationFlags(phone=True))

    await pipeline.process(item)

    assert len(validators[ValidationType.PHONE].calls) == 1
    assert validators[ValidationType.PHONE].calls[0] == {"phone": "3125550100", "country": "US"}
    assert validators[ValidationType.EMAIL].calls == []


@pytest.mark.asyncio
async def test_missing_validator_is_recorded_as_failure(queue, storage, settings):
    validators = {ValidationType.EMAIL: FakeValidator({"email_status": "Valid"})}
    pipeline = ItemPipeline(queue, make_collaborators(validators=validators), settings)
    item = await enqueue_item(queue, storage, flags=ValidationFlags(email=True, phone=True))

    outcome = await pipeline.process(item)

    assert outcome.success is True
    stored = await storage.get_item(item.id)
    assert stored.validation_results["phone"]["ok"] is False
    assert stored.validation_results["email"]["ok"] is True


@pytest.mark.asyncio
async def test_field_mismatch_completes_with_warning(queue, storage, settings):
    crm = FakeCrm({"101": dict(CONTACT)}, submit_error=SubmissionMismatchError("unknown property um_suffix"))
    pipeline = ItemPipeline(queue, make_collaborators(crm=crm), settings)
    item = await enqueue_item(queue, storage)

    outcome = await pipeline.process(item)

    assert outcome.success is True
    assert outcome.warning == PARTIAL_SUBMISSION
    stored = await storage.get_item(item.id)
    assert stored.status == ItemStatus.COMPLETED
    assert stored.warning == PARTIAL_SUBMISSION
    assert stored.submission_response["warning"] == PARTIAL_SUBMISSION


@pytest.mark.asyncio
async def test_transient_failures_back_off_then_fail(queue, storage, settings):
    crm = FakeCrm({"101": dict(CONTACT)}, submit_error=TransientError("CRM timeout"))
    pipeline = ItemPipeline(queue, make_collaborators(crm=crm), settings)
    item = await enqueue_item(queue, storage)

    await pipeline.process(item)
    before = utcnow()
    await pipeline.process(await storage.get_item(item.id))
    after = utcnow()

    stored = await storage.get_item(item.id)
    assert stored.status == ItemStatus.PENDING
    assert stored.attempts == 2
    delay = timedelta(seconds=compute_backoff(2, settings.retry_base_delay, settings.retry_max_delay))
    assert delay == timedelta(seconds=240)
    assert before + delay <= stored.next_retry_at <= after + delay

    await pipeline.process(stored)

    stored = await storage.get_item(item.id)
    assert stored.status == ItemStatus.FAILED
    assert stored.attempts == 3
    assert stored.next_retry_at is None
    assert stored.error_message == "CRM timeout"


@pytest.mark.asyncio
async def test_malformed_validator_result_only_fails_that_validation(queue, storage, settings):
    validators = default_validators()
    validators[ValidationType.PHONE] = FakeValidator(["unexpected", "shape"])
    crm = FakeCrm({"101": dict(CONTACT)})
    pipeline = ItemPipeline(queue, make_collaborators(crm=crm, validators=validators), settings)
    item = await enqueue_item(queue, storage, flags=ValidationFlags(email=True, phone=True))

    outcome = await pipeline.process(item)

    assert outcome.success is True
    stored = await storage.get_item(item.id)
    assert stored.status == ItemStatus.COMPLETED
    assert stored.validation_results["phone"]["ok"] is False
    assert stored.validation_results["email"]["ok"] is True
    assert crm.submissions[0]["fields"]["um_email_status"] == "Valid"


@pytest.mark.asyncio
async def test_usage_is_recorded_concurrently(queue, storage, settings):
    class SlowUsage(FakeUsage):
        def __init__(self):
            super().__init__()
            self.in_flight = 0
            self.max_in_flight = 0

        async def increment_usage(self, client_id, validation_type):
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            await asyncio.sleep(0.01)
            self.in_flight -= 1
            await super().increment_usage(client_id, validation_type)

    usage = SlowUsage()
    pipeline = ItemPipeline(queue, make_collaborators(usage=usage), settings)
    item = await enqueue_item(queue, storage)

    await pipeline.process(item)

    assert len(usage.calls) == 4
    assert usage.max_in_flight == 4
