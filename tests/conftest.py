from __future__ import annotations

import json
import subprocess
import threading
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest

from turnforge.config import AuthConfig
from turnforge.security import SecurityAuditor


def run_git(repo: Path, args: list[str]) -> str:
    completed = subprocess.run(
        ["git", "-C", str(repo), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project directory with one file and no repository yet."""

    root = tmp_path / "project"
    root.mkdir()
    (root / "README.md").write_text("# Demo\n", encoding="utf-8")
    return root


@pytest.fixture
def auditor() -> SecurityAuditor:
    return SecurityAuditor()


@pytest.fixture
def make_controller(project: Path, auditor: SecurityAuditor, tmp_path: Path) -> Iterator[Callable[..., Any]]:
    """Build a session controller wired to real collaborators in `project`."""

    from turnforge.pipeline.checkpoints import GitVersionManager
    from turnforge.pipeline.executor import ActionExecutor
    from turnforge.pipeline.session import StreamSessionController, TurnRegistry
    from turnforge.pipeline.storage import SqliteStatementStore, WorkspaceStorage
    from turnforge.pipeline.validator import ActionValidator

    registry = TurnRegistry()
    stores: list[SqliteStatementStore] = []

    def factory(*, storage: Any = None, **kwargs: Any) -> StreamSessionController:
        if storage is None:
            store = SqliteStatementStore(tmp_path / "statements.db")
            stores.append(store)
            storage = WorkspaceStorage(project, statement_store=store)
        kwargs.setdefault("registry", registry)
        return StreamSessionController(
            project,
            validator=ActionValidator(project, auditor=auditor),
            executor=ActionExecutor(storage, auditor=auditor),
            version_manager=GitVersionManager(project, auditor=auditor),
            auditor=auditor,
            **kwargs,
        )

    yield factory

    for store in stores:
        store.close()


# =============================================================================
# Device authorization fakes
# =============================================================================


class FakeClock:
    """Clock whose sleep() just moves time forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.sleeps: list[float] = []
        self.on_sleep: Callable[[int], None] | None = None

    def now(self) -> datetime:
        return self.current

    def sleep(self, seconds: float, cancel_event: threading.Event | None = None) -> bool:
        self.sleeps.append(seconds)
        if self.on_sleep is not None:
            self.on_sleep(len(self.sleeps))
        if cancel_event is not None and cancel_event.is_set():
            return True
        self.current += timedelta(seconds=seconds)
        return False


class FakeAuthServer:
    """Scripted authorization server behind httpx.MockTransport.

    token_replies holds (status, json) tuples, or an exception instance to
    raise. The last reply repeats once the script runs out.
    """

    def __init__(self) -> None:
        self.device_reply: tuple[int, dict[str, Any]] = (200, {
            "device_code": "dev-123",
            "user_code": "ABCD-EFGH",
            "verification_uri": "https://chat.example.test/authorize",
            "verification_uri_complete": "https://chat.example.test/authorize?user_code=ABCD-EFGH",
            "expires_in": 600,
            "interval": 5,
        })
        self.token_replies: list[Any] = []
        self.requests: list[httpx.Request] = []

    def form(self, index: int) -> dict[str, str]:
        from urllib.parse import parse_qsl

        return dict(parse_qsl(self.requests[index].content.decode()))

    @property
    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/token")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/device/code"):
            status, body = self.device_reply
            return httpx.Response(status, json=body)

        index = len(self.token_requests) - 1
        reply = self.token_replies[min(index, len(self.token_replies) - 1)]
        if isinstance(reply, Exception):
            raise reply
        status, body = reply
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, content=json.dumps(body).encode(), headers={"content-type": "application/json"})


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(
        device_code_url="https://chat.example.test/api/v1/oauth2/device/code",
        token_url="https://chat.example.test/api/v1/oauth2/token",
    )


@pytest.fixture
def auth_server() -> FakeAuthServer:
    return FakeAuthServer()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def auth_controller(
    auth_config: AuthConfig,
    auth_server: FakeAuthServer,
    clock: FakeClock,
    auditor: SecurityAuditor,
) -> Iterator[Any]:
    from turnforge.device_auth import DeviceAuthController, DeviceAuthTransport

    client = httpx.Client(transport=httpx.MockTransport(auth_server.handler))
    transport = DeviceAuthTransport(auth_config, client=client)
    yield DeviceAuthController(auth_config, transport=transport, clock=clock, auditor=auditor)
    client.close()
