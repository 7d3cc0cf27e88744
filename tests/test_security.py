from db.models import get_user, get_user_by_email
from utils.rate_limit import SimpleRateLimiter
from utils.security import (
    hash_password,
    preview,
    random_password_hash,
    safe_compare,
    username_from_email,
)


def test_password_hash_is_salted():
    salt, hashed = hash_password("segredo")
    assert hash_password("segredo", salt) == (salt, hashed)
    assert hash_password("outra", salt)[1] != hashed
    assert hash_password("segredo")[1] != hashed


def test_random_password_hash_format():
    salt, hashed = random_password_hash().split("$")
    assert len(salt) == 32
    assert len(hashed) == 64
    assert random_password_hash() != random_password_hash()


def test_username_from_email():
    name = username_from_email("maria.silva@exemplo.com")
    local, suffix = name.rsplit("_", 1)
    assert local == "maria.silva"
    assert len(suffix) == 8
    int(suffix, 16)


def test_safe_compare_and_preview():
    assert safe_compare("abc", "abc")
    assert not safe_compare("abc", "abd")
    assert not safe_compare(None, "x")
    assert preview("supersecreto") == "supe..."
    assert preview("") == "não definido"


def test_rate_limiter_window():
    limiter = SimpleRateLimiter(window_s=60, max_requests=2)
    assert limiter.allow("ip", now=0)
    assert limiter.allow("ip", now=1)
    assert not limiter.allow("ip", now=2)
    assert limiter.allow("outro-ip", now=2)
    assert limiter.allow("ip", now=62)


def test_rate_limiter_drops_idle_keys():
    limiter = SimpleRateLimiter(window_s=60, max_requests=5)
    for i in range(10):
        assert limiter.allow(f"10.0.0.{i}", now=1)
    assert len(limiter.events) == 10
    assert limiter.allow("10.0.0.99", now=120)
    assert list(limiter.events) == ["10.0.0.99"]


def test_user_lookup_by_id(client):
    from conftest import as_body, hotmart_payload

    client.post("/webhook/hotmart", data=as_body(hotmart_payload()), content_type="application/json")
    by_email = get_user_by_email("WS.AdvogaciaSM@gmail.com ")
    assert get_user(by_email.id) == by_email
    assert get_user(999) is None
