import pytest

from conftest import FakeProvider
from aurasync.environment import assess_environment, is_secure_context
from aurasync.models import PermissionState


@pytest.mark.parametrize("url,secure", [
    ("https://aurasync.example.com/", True),
    ("wss://aurasync.example.com/ws", True),
    ("http://localhost:8000/capture/start", True),
    ("http://127.0.0.1/", True),
    ("http://[::1]:8000/", True),
    ("http://app.localhost/", True),
    ("http://192.168.1.20:8000/", False),
    ("http://testserver/capture/start", False),
    ("file:///tmp/index.html", False),
    ("", False),
])
def test_is_secure_context(url, secure):
    assert is_secure_context(url) is secure


def test_assess_environment_reads_provider():
    env = assess_environment("https://x.example/", FakeProvider(permission=PermissionState.PROMPT))
    assert env.secure_context and env.media_supported
    assert env.permission is PermissionState.PROMPT


def test_assess_environment_without_permission_query():
    class Bare:
        supported = False

    env = assess_environment("http://localhost/", Bare())
    assert env.secure_context
    assert not env.media_supported
    assert env.permission is PermissionState.UNKNOWN
