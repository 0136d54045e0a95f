from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from codebridge.engine.config import BridgeConfig, load_yaml_config
from codebridge.engine.errors import (
    AdmissionRejected,
    DangerousCommandError,
    ExecutionNotFound,
    InvalidTransition,
    SpawnError,
)
from codebridge.engine.hash_store import HashStore, hash_content
from codebridge.engine.lifecycle import (
    validate_process_transition,
    validate_session_transition,
)
from codebridge.engine.models import (
    ExecutionResult,
    ExecutionSession,
    ProcessState,
    SessionState,
    SyncFailure,
)


# ── Hash store ──


def test_hash_content_is_sha256_hex() -> None:
    assert hash_content(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_hash_store_change_detection() -> None:
    store = HashStore()
    h1 = hash_content(b"one")
    h2 = hash_content(b"two")
    assert store.is_changed("p", "a.txt", h1)
    store.set("p", "a.txt", h1)
    assert not store.is_changed("p", "a.txt", h1)
    assert store.is_changed("p", "a.txt", h2)
    # indexes are per project
    assert store.is_changed("other", "a.txt", h1)


def test_hash_store_reset_and_remove() -> None:
    store = HashStore()
    store.reset("p", {"a": "1", "b": "2"})
    assert store.paths("p") == {"a", "b"}
    store.remove("p", "a")
    store.remove("p", "missing")
    assert store.paths("p") == {"b"}
    store.reset("p")
    assert store.paths("p") == set()
    assert "p" in store
    store.discard("p")
    assert "p" not in store


# ── Lifecycle ──


def test_session_happy_path_transitions() -> None:
    path = [
        SessionState.PENDING,
        SessionState.HYDRATING,
        SessionState.RUNNING,
        SessionState.RECONCILING,
        SessionState.COMPLETED,
    ]
    for current, target in zip(path, path[1:]):
        validate_session_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (SessionState.PENDING, SessionState.RUNNING),
        (SessionState.RUNNING, SessionState.COMPLETED),
        (SessionState.COMPLETED, SessionState.RUNNING),
        (SessionState.CANCELLED, SessionState.FAILED),
    ],
)
def test_session_invalid_transitions(current, target) -> None:
    with pytest.raises(InvalidTransition):
        validate_session_transition(current, target)


def test_process_transitions() -> None:
    validate_process_transition(ProcessState.IDLE, ProcessState.SPAWNING)
    validate_process_transition(ProcessState.SPAWNING, ProcessState.FAILED)
    validate_process_transition(ProcessState.RUNNING, ProcessState.TERMINATED)
    with pytest.raises(InvalidTransition):
        validate_process_transition(ProcessState.IDLE, ProcessState.RUNNING)
    with pytest.raises(InvalidTransition):
        validate_process_transition(ProcessState.TERMINATED, ProcessState.RUNNING)
    assert ProcessState.COMPLETED.is_terminal
    assert not ProcessState.RUNNING.is_terminal
    assert SessionState.CANCELLED.is_terminal


# ── Errors and models ──


def test_error_payloads() -> None:
    err = AdmissionRejected("proj", "exec_1")
    assert err.to_payload() == {"code": "ADMISSION_REJECTED", "message": err.message}
    assert err.to_payload("exec_2")["executionId"] == "exec_2"
    assert DangerousCommandError("x").code == "DANGEROUS_COMMAND"
    assert SpawnError("claude", "No such file").code == "SPAWN_FAILED"
    assert "exec_9" in ExecutionNotFound("exec_9").message


def test_execution_session_defaults() -> None:
    session = ExecutionSession(project_id="p", command="echo hi")
    assert session.execution_id.startswith("exec_")
    assert session.state is SessionState.PENDING
    assert not session.stop_requested
    session.stop_reason = "client"
    assert session.stop_requested
    assert session.duration_ms >= 0


def test_execution_result_payload_is_camel_case() -> None:
    result = ExecutionResult(
        execution_id="exec_1",
        project_id="p",
        status="partial",
        exit_code=0,
        files_changed=["a.txt"],
        files_deleted=[],
        sync_failures=[SyncFailure("b.bin", "binary content is not supported")],
        duration_ms=12,
    )
    payload = result.to_payload()
    assert payload == {
        "executionId": "exec_1",
        "projectId": "p",
        "status": "partial",
        "exitCode": 0,
        "filesChanged": ["a.txt"],
        "filesDeleted": [],
        "syncErrors": [{"path": "b.bin", "error": "binary content is not supported"}],
        "duration": 12,
    }


# ── Config ──


def test_config_from_env(monkeypatch) -> None:
    monkeypatch.setenv("BRIDGE_PORT", "4100")
    monkeypatch.setenv("BRIDGE_AUTH_ENABLED", "true")
    monkeypatch.setenv("BRIDGE_AUTH_TOKENS", "tok1:alice, tok2:bob, broken")
    monkeypatch.setenv("BRIDGE_AGENT_CLI_ARGS", "--print,--verbose")
    monkeypatch.setenv("BRIDGE_EXECUTION_TIMEOUT", "2.5")
    monkeypatch.delenv("BRIDGE_AGENT_CLI_PATH", raising=False)
    monkeypatch.setenv("CLAUDE_CLI_PATH", "/opt/claude")

    config = BridgeConfig.from_env()

    assert config.port == 4100
    assert config.auth_enabled is True
    assert config.auth_tokens == {"tok1": "alice", "tok2": "bob"}
    assert config.agent_argv == ["/opt/claude", "--print", "--verbose"]
    assert config.execution_timeout_seconds == 2.5


def test_config_defaults() -> None:
    config = BridgeConfig()
    assert config.port == 3001
    assert config.max_command_length == 5000
    assert config.rate_limit_max_executions == 5
    assert ".git" in config.skip_dirs and "node_modules" in config.skip_dirs
    assert config.agent_argv == ["claude", "--print"]


def test_apply_overrides_coerces_types() -> None:
    config = BridgeConfig().apply_overrides({
        "port": "8080",
        "auth_enabled": "yes",
        "stop_grace_seconds": "1",
        "skip_dirs": ".git, dist",
        "not_a_field": 1,
    })
    assert config.port == 8080
    assert config.auth_enabled is True
    assert config.stop_grace_seconds == 1.0
    assert config.skip_dirs == [".git", "dist"]


def test_load_yaml_config_bridge_section() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "bridge.yaml"
        path.write_text(
            "bridge:\n"
            "  port: 3999\n"
            "  agent_cli_path: /bin/sh\n"
            "  agent_cli_args: []\n"
            "  auth_tokens:\n"
            "    dev-token: alice\n",
            encoding="utf-8",
        )
        config = load_yaml_config(path, base=BridgeConfig())
    assert config.port == 3999
    assert config.agent_argv == ["/bin/sh"]
    assert config.auth_tokens == {"dev-token": "alice"}


def test_load_yaml_config_rejects_non_mapping() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "bad.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_yaml_config(path, base=BridgeConfig())
