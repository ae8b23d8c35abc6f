import asyncio
import inspect
import os
import sys
from pathlib import Path

# Must be set before any phoneauth import builds settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SMS_PROVIDER", "console")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from phoneauth.config import Settings  # noqa: E402
from phoneauth.service.auth import AuthService  # noqa: E402
from phoneauth.service.otp import OTPService  # noqa: E402
from phoneauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from phoneauth.service.sms import SMSSender  # noqa: E402
from phoneauth.storage.memory import MemoryStore  # noqa: E402


class RecordingSMSSender(SMSSender):
    """Captures outbound OTPs so tests can read the code a user would receive."""

    name = "recording"

    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    async def send_otp(self, phone: str, code: str) -> bool:
        if self.fail:
            raise ConnectionError("gateway unreachable")
        self.sent.append((phone, code))
        return True

    def last_code(self, phone: str) -> str:
        for sent_phone, code in reversed(self.sent):
            if sent_phone == phone:
                return code
        raise AssertionError(f"no OTP sent to {phone}")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def otp_service(memory_store, settings):
    return OTPService(memory_store, settings)


@pytest.fixture
def auth_service(memory_store, settings, otp_service):
    return AuthService(memory_store, settings, otp=otp_service)


@pytest.fixture
def sms_recorder():
    return RecordingSMSSender()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
