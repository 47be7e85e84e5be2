import logging
from pathlib import Path

import pytest

from storeflow.auth import CURRENT_USER_KEY, LoginError, LoginManager
from storeflow.storage import LocalStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _manager(tmp_path: Path, clock=None) -> LoginManager:
    return LoginManager(
        LocalStore(tmp_path / "storeflow.json"),
        allowed_domain="@cavitak.com",
        verification_code="123456",
        resend_cooldown=30,
        clock=clock or FakeClock(),
    )


@pytest.mark.parametrize(
    "email",
    ["", "   ", "someone@gmail.com", "@cavitak.com", "ops@cavitak.com.evil.org"],
)
def test_rejects_emails_outside_domain(tmp_path: Path, email: str) -> None:
    manager = _manager(tmp_path)
    with pytest.raises(LoginError):
        manager.request_code(email)


def test_request_code_logs_development_code(tmp_path: Path, caplog) -> None:
    manager = _manager(tmp_path)
    caplog.set_level(logging.INFO, logger="storeflow.auth")

    assert manager.request_code("  Ops@Cavitak.com ") == 30
    assert "[DEV MODE] OTP for ops@cavitak.com is 123456" in caplog.text


def test_resend_cooldown(tmp_path: Path) -> None:
    clock = FakeClock()
    manager = _manager(tmp_path, clock)
    manager.request_code("ops@cavitak.com")

    clock.now += 10.5
    with pytest.raises(LoginError) as excinfo:
        manager.request_code("ops@cavitak.com")
    assert excinfo.value.retry_after == 20

    manager.request_code("other@cavitak.com")

    clock.now += 20
    assert manager.request_code("ops@cavitak.com") == 30


def test_verify_sets_current_user(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.request_code("ops@cavitak.com")

    with pytest.raises(LoginError):
        manager.verify("ops@cavitak.com", "000000")
    assert manager.current_user() is None

    assert manager.verify("OPS@cavitak.com", " 123456 ") == "ops@cavitak.com"
    assert manager.current_user() == "ops@cavitak.com"
    assert LocalStore(tmp_path / "storeflow.json").get(CURRENT_USER_KEY) == "ops@cavitak.com"

    # a code is good for one sign-in only
    with pytest.raises(LoginError):
        manager.verify("ops@cavitak.com", "123456")


def test_verify_requires_requested_code(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    with pytest.raises(LoginError):
        manager.verify("ops@cavitak.com", "123456")


def test_logout_forgets_user(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.request_code("ops@cavitak.com")
    manager.verify("ops@cavitak.com", "123456")

    manager.logout()
    assert manager.current_user() is None
    assert LocalStore(tmp_path / "storeflow.json").get(CURRENT_USER_KEY) is None
    manager.logout()
