from decimal import Decimal

import pytest

from wallet.config import Settings
from wallet.models import BalanceRequestCreate, RegisterRequest
from wallet.service import WalletService
from wallet.sql_storage import SqlStorage
from wallet.storage import InMemoryStorage


def make_settings(**overrides) -> Settings:
    values = {
        "DATABASE_URL": "",
        "SESSION_SECRET": "test-session-secret",
        "ADMIN_USERNAME": None,
        "ADMIN_PASSWORD": None,
        "SEED_DEMO_USER": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryStorage()
    return SqlStorage(f"sqlite:///{tmp_path / 'ledger.db'}")


@pytest.fixture
def service(store, settings):
    return WalletService(store, settings)


@pytest.fixture
def admin(service):
    return service.ensure_admin("admin", "admin-pass")


@pytest.fixture
def user(service):
    return service.register(RegisterRequest(username="ravi", password="ravi-pass"))


@pytest.fixture
def fund(service, admin):
    """Top up a wallet through the regular request/approve path."""

    def _fund(user, amount):
        request = service.submit_balance_request(
            user.id, BalanceRequestCreate(amount=Decimal(str(amount)), utr_number=f"UTR-FUND-{amount}")
        )
        return service.approve_balance_request(request.id, admin)

    return _fund
