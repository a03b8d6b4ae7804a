import asyncio
from collections import deque
from dataclasses import replace

import pytest

from genrouter.core.config import settings

# Override settings for tests
settings.app_env = "development"
settings.log_json = False
settings.sentry_dsn = ""

from genrouter.gateway.quota import hash_credential  # noqa: E402
from genrouter.gateway.snapshot import build_snapshot  # noqa: E402
from genrouter.gateway.types import AdapterResult, AttemptStatus  # noqa: E402

ACME_KEY = "acme-secret"
GLOBEX_KEY = "globex-secret"
INITECH_KEY = "initech-secret"


def make_payload() -> dict:
    """Routing payload shared by most tests.

    Resolution of "fast" is [backup, openai, gemini]: backup and openai share
    priority 1 and backup is cheaper; gemini has priority 2.
    """
    return {
        "providers": [
            {"provider_id": "openai", "wire_format": "openai_chat", "priority": 1},
            {"provider_id": "gemini", "wire_format": "gemini", "priority": 2},
            {
                "provider_id": "yandex",
                "wire_format": "yandexgpt",
                "priority": 3,
                "options": {"folder_id": "b1g-folder"},
            },
            {
                "provider_id": "backup",
                "wire_format": "openai_chat",
                "priority": 1,
                "base_url": "https://backup.example.com/v1",
            },
        ],
        "aliases": [
            {
                "alias": "fast",
                "bindings": [
                    {"provider_id": "openai", "model": "gpt-4o-mini", "cost_per_token": 0.000001},
                    {"provider_id": "backup", "model": "gpt-4o-mini-backup", "cost_per_token": 0.0000005},
                    {
                        "provider_id": "gemini",
                        "model": "gemini-2.0-flash",
                        "cost_per_token": 0.0000002,
                        "capabilities": ["text", "vision"],
                    },
                ],
            },
            {
                "alias": "vision",
                "bindings": [
                    {"provider_id": "yandex", "model": "yandexgpt-lite", "cost_per_token": 0.0000001},
                    {
                        "provider_id": "gemini",
                        "model": "gemini-2.0-flash",
                        "cost_per_token": 0.0000002,
                        "capabilities": ["text", "vision"],
                    },
                    {
                        "provider_id": "openai",
                        "model": "gpt-4o",
                        "cost_per_token": 0.002,
                        "capabilities": ["text", "vision"],
                    },
                ],
            },
            {
                "alias": "priced",
                "bindings": [{"provider_id": "openai", "model": "gpt-4o", "cost_per_token": 0.002}],
            },
        ],
        "tenants": [
            {
                "tenant_id": "acme",
                "credential_hash": hash_credential(ACME_KEY),
                "requests_per_interval": 5,
                "interval_seconds": 60,
                "cache_namespace": "acme",
            },
            {
                "tenant_id": "globex",
                "credential_hash": hash_credential(GLOBEX_KEY),
                "requests_per_interval": 100,
                "interval_seconds": 60,
                "cost_budget_per_interval": 0.5,
            },
            {
                "tenant_id": "initech",
                "credential_hash": hash_credential(INITECH_KEY),
                "requests_per_interval": 100,
                "model_preference": {"fast": "priced"},
            },
        ],
    }


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def ok_result(content: str = "Hello world", prompt_tokens: int = 10, completion_tokens: int = 20) -> AdapterResult:
    return AdapterResult(
        status=AttemptStatus.SUCCESS,
        content=content,
        finish_reason="stop",
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )


def failed_result(status: AttemptStatus, error_code: str = "") -> AdapterResult:
    return AdapterResult(status=status, error_code=error_code, error_message=f"{status.value} from test")


class ScriptedAdapter:
    """Adapter stand-in: returns queued results in order, the last one repeats.

    A queued exception instance is raised instead of returned.
    """

    def __init__(self, *results, delay: float = 0.0, call_log: list | None = None):
        self.results = deque(results or [ok_result()])
        self.delay = delay
        self.calls = 0
        self.call_log = call_log

    async def send(self, request, provider_id, model, timeout=30.0):
        self.calls += 1
        if self.call_log is not None:
            self.call_log.append(provider_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.popleft() if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return replace(result, provider_id=provider_id, model=result.model or model)


@pytest.fixture
def payload():
    return make_payload()


@pytest.fixture
def snapshot(payload):
    return build_snapshot(payload, generation=1)


@pytest.fixture
def clock():
    return FakeClock()
