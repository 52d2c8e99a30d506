import asyncio
import logging
from typing import Any, Dict, List, Optional

import pytest

from contactqueue.collaborators import Collaborators
from contactqueue.models import ValidationType
from contactqueue.queue import ItemQueue
from contactqueue.settings import Settings, get_settings
from contactqueue.storage import Storage


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        data_dir=tmp_path / "queue",
        max_retries=3,
        retry_base_delay=60.0,
        retry_max_delay=3600.0,
        stalled_threshold_minutes=30,
        completed_retention_days=30,
        pending_threshold=100,
    )


@pytest.fixture
def storage(settings):
    return Storage(settings.data_dir)


@pytest.fixture
def queue(storage, settings):
    return ItemQueue(storage, settings)


@pytest.fixture(autouse=True)
def _reset_global_state():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    logging.getLogger().handlers = []


class FakeCrm:
    """In-memory CRM: contacts keyed by subject id, submissions recorded."""

    def __init__(
        self,
        contacts: Optional[Dict[str, Dict[str, Any]]] = None,
        submit_error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.contacts = contacts or {}
        self.submit_error = submit_error
        self.delay = delay
        self.fetch_calls: List[str] = []
        self.submissions: List[Dict[str, Any]] = []

    async def fetch_context(self, subject_id, client_id):
        self.fetch_calls.append(subject_id)
        return self.contacts.get(subject_id)

    async def submit(self, fields, subject_id, client_id):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.submit_error is not None:
            raise self.submit_error
        self.submissions.append({"fields": dict(fields), "subject_id": subject_id, "client_id": client_id})
        return {"success": True, "status": 204}


class FakeUsage:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: List[tuple] = []

    async def increment_usage(self, client_id, validation_type):
        self.calls.append((client_id, validation_type))
        if self.error is not None:
            raise self.error


class FakeValidator:
    def __init__(self, result: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.result = result or {}
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, payload, client_id):
        self.calls.append(payload)
        if self.error is not None:
            raise self.error
        return self.result


CONTACT = {
    "email": "jane@example.com",
    "firstname": "jane",
    "lastname": "doe",
    "phone": "3125550100",
    "address": "1 Main St",
    "city": "Chicago",
    "state": "IL",
    "zip": "60601",
    "country": "US",
}


def default_validators() -> Dict[ValidationType, FakeValidator]:
    return {
        ValidationType.EMAIL: FakeValidator(
            {"current_email": "jane@example.com", "email_status": "Valid", "bounce_status": "Deliverable"}
        ),
        ValidationType.NAME: FakeValidator(
            {"first_name": "Jane", "last_name": "Doe", "was_corrected": True, "format_valid": True}
        ),
        ValidationType.PHONE: FakeValidator(
            {"formatted": "+1 312-555-0100", "is_valid": True, "type": "landline", "country_code": "US"}
        ),
        ValidationType.ADDRESS: FakeValidator(
            {"house_number": "1", "street_name": "Main", "city": "Chicago", "state": "IL", "is_valid": True}
        ),
    }


def make_collaborators(crm=None, validators=None, usage=None, alerts=None) -> Collaborators:
    return Collaborators(
        crm=crm or FakeCrm({"101": dict(CONTACT)}),
        validators=default_validators() if validators is None else validators,
        usage=usage,
        alerts=alerts,
    )
