import pytest

from vote_gateway.anchor import DEFAULT_EXPLORER_URL, FileAnchor, HttpAnchor, NullAnchor
from vote_gateway.audit_log import NullAuditRecorder, TamperEvidentAuditLog
from vote_gateway.config import EngineConfig, build_anchor_from_config
from vote_gateway.engine import build_engine_from_config

_ENV = (
    "VOTE_DB_PATH",
    "VOTE_AUDIT_LOG_PATH",
    "VOTE_ANCHOR_MODE",
    "VOTE_ANCHOR_URL",
    "VOTE_ANCHOR_API_KEY",
    "VOTE_ANCHOR_FILE",
    "VOTE_ANCHOR_TIMEOUT_SECONDS",
    "VOTE_EXPLORER_URL",
    "VOTE_MAX_REQUEST_BYTES",
    "VOTE_ENV",
    "VOTE_ALLOW_EPHEMERAL_SIGNING_KEYS",
    "VOTE_AUDIT_SIGNING_KEY",
    "VOTE_AUDIT_SIGNING_KEY_FILE",
    "VOTE_AUDIT_KEY_ID",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    cfg = EngineConfig.from_env()
    assert cfg.db_path == "vote_gateway.db"
    assert cfg.anchor_mode == "none"
    assert cfg.explorer_url == DEFAULT_EXPLORER_URL
    assert cfg.is_prod is False


def test_from_env_reads_and_clamps(monkeypatch):
    monkeypatch.setenv("VOTE_ANCHOR_MODE", " HTTP ")
    monkeypatch.setenv("VOTE_ANCHOR_URL", "https://anchor.example/append")
    monkeypatch.setenv("VOTE_ANCHOR_TIMEOUT_SECONDS", "-1")
    monkeypatch.setenv("VOTE_MAX_REQUEST_BYTES", "oops")
    monkeypatch.setenv("VOTE_ENV", "staging")

    cfg = EngineConfig.from_env()
    assert cfg.anchor_mode == "http"
    assert cfg.anchor_timeout_seconds == 5.0
    assert cfg.max_request_bytes == 262144
    assert cfg.env == "dev"
    assert isinstance(build_anchor_from_config(cfg), HttpAnchor)


def test_anchor_from_config(tmp_path):
    assert isinstance(build_anchor_from_config(EngineConfig()), NullAnchor)
    file_cfg = EngineConfig(anchor_mode="file", anchor_file=str(tmp_path / "a.jsonl"))
    assert isinstance(build_anchor_from_config(file_cfg), FileAnchor)
    with pytest.raises(ValueError):
        build_anchor_from_config(EngineConfig(anchor_mode="file"))


def test_engine_without_audit_in_dev(tmp_path):
    engine = build_engine_from_config(EngineConfig(db_path=str(tmp_path / "v.db")))
    assert isinstance(engine.audit, NullAuditRecorder)
    assert isinstance(engine.anchor, NullAnchor)


def test_prod_requires_audit_log(tmp_path):
    with pytest.raises(RuntimeError):
        build_engine_from_config(EngineConfig(db_path=str(tmp_path / "v.db"), env="prod"))


def test_audit_log_requires_signing_key(tmp_path):
    cfg = EngineConfig(db_path=str(tmp_path / "v.db"), audit_log_path=str(tmp_path / "audit.jsonl"))
    with pytest.raises(RuntimeError):
        build_engine_from_config(cfg)


def test_audit_log_with_seed_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("VOTE_AUDIT_SIGNING_KEY", "11" * 32)
    monkeypatch.setenv("VOTE_AUDIT_KEY_ID", "prod-audit")
    cfg = EngineConfig(
        db_path=str(tmp_path / "v.db"),
        audit_log_path=str(tmp_path / "audit.jsonl"),
        env="prod",
    )
    engine = build_engine_from_config(cfg)
    assert isinstance(engine.audit, TamperEvidentAuditLog)
    assert engine.audit.signer.key_id == "prod-audit"


def test_ephemeral_key_allowed_for_demos(tmp_path):
    cfg = EngineConfig(
        db_path=str(tmp_path / "v.db"),
        audit_log_path=str(tmp_path / "audit.jsonl"),
        allow_ephemeral_signing_keys=True,
    )
    assert isinstance(build_engine_from_config(cfg).audit, TamperEvidentAuditLog)


def test_malformed_seed_is_rejected(tmp_path, monkeypatch):
    monkeypatch.setenv("VOTE_AUDIT_SIGNING_KEY", "not-hex")
    cfg = EngineConfig(db_path=str(tmp_path / "v.db"), audit_log_path=str(tmp_path / "audit.jsonl"))
    with pytest.raises(RuntimeError):
        build_engine_from_config(cfg)
