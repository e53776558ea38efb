import importlib.util
from pathlib import Path

import pytest

from conftest import STRONG_PASSWORD
from tokenward.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


async def test_creates_admin(bootstrap):
    result = await bootstrap("Root@Example.com", STRONG_PASSWORD)

    assert result["status"] == "created"
    credential = get_runtime().store.get_credential(result["user_id"])
    assert credential.email == "root@example.com"
    assert credential.is_admin


async def test_promotes_existing_account(bootstrap):
    store = get_runtime().store
    existing = store.create_credential("member@example.com", "hash")

    result = await bootstrap("member@example.com", "ignored")

    assert result == {"user_id": existing.id, "email": "member@example.com", "status": "promoted"}
    assert store.get_credential(existing.id).is_admin
    assert (await bootstrap("member@example.com", "ignored"))["status"] == "already_admin"


async def test_weak_password_rejected(bootstrap):
    with pytest.raises(ValueError):
        await bootstrap("root@example.com", "abc123")


async def test_dry_run_changes_nothing(bootstrap):
    result = await bootstrap("root@example.com", STRONG_PASSWORD, dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.get_credential_by_email("root@example.com") is None
