from bot.middleware import ThrottleMiddleware, _is_admin, _is_allowed
from services.config_service import EngineSettings


def test_admin_guard_allows_admin():
    settings = EngineSettings(ADMIN_TELEGRAM_IDS="123,456")
    assert _is_admin(123, settings)


def test_admin_guard_blocks_non_admin():
    settings = EngineSettings(ADMIN_TELEGRAM_IDS="123,456", ALLOW_ALL_USERS=False)
    assert not _is_admin(999, settings)
    assert not _is_allowed(999, settings)


def test_throttle_allows_after_cooldown():
    throttle = ThrottleMiddleware(cooldown=1.0)
    assert throttle.allow(1, now=10.0)
    assert not throttle.allow(1, now=10.5)
    assert throttle.allow(2, now=10.5)
    assert throttle.allow(1, now=11.2)
