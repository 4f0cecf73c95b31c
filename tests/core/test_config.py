"""Tests for SyncConfig."""

from __future__ import annotations

from pathlib import Path

import pytest

from attachsync.core.config import DEFAULT_CHUNK_SIZE, SyncConfig
from attachsync.core.types import DedupScope


class TestSyncConfig:
    """Tests for SyncConfig class."""

    def test_defaults(self) -> None:
        """Should provide working defaults."""
        config = SyncConfig()
        assert config.chunk_size == DEFAULT_CHUNK_SIZE
        assert config.dedup_scope == DedupScope.WORK_ITEM
        assert config.max_retries == 3
        assert config.api_key is None
        assert not config.remote_configured

    def test_normalisation(self) -> None:
        """Should strip the URL and coerce paths and enums."""
        config = SyncConfig(
            db_path="x.db",  # type: ignore[arg-type]
            org_url="https://dev.azure.com/org/",
            project="demo",
            dedup_scope="global",  # type: ignore[arg-type]
        )
        assert config.db_path == Path("x.db")
        assert config.org_url == "https://dev.azure.com/org"
        assert config.dedup_scope == DedupScope.GLOBAL
        assert config.remote_configured

    def test_invalid_values(self) -> None:
        """Should reject impossible sizes and budgets."""
        with pytest.raises(ValueError):
            SyncConfig(chunk_size=0)
        with pytest.raises(ValueError):
            SyncConfig(max_retries=-1)
        with pytest.raises(ValueError):
            SyncConfig(dedup_scope="project")  # type: ignore[arg-type]

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Should read ATTACHSYNC_* and AZDO_* variables."""
        monkeypatch.setenv("ATTACHSYNC_DB_PATH", str(tmp_path / "env.db"))
        monkeypatch.setenv("AZDO_ORG_URL", "https://dev.azure.com/acme")
        monkeypatch.setenv("AZDO_PROJECT", "Fabrikam")
        monkeypatch.setenv("AZDO_PAT", "secret-pat")
        monkeypatch.setenv("ATTACHSYNC_CHUNK_SIZE", "1024")
        monkeypatch.setenv("ATTACHSYNC_DEDUP_SCOPE", "global")
        monkeypatch.setenv("ATTACHSYNC_RUN_WORKERS", "false")
        monkeypatch.setenv("ATTACHSYNC_API_KEY", "k")

        config = SyncConfig.from_env()

        assert config.db_path == tmp_path / "env.db"
        assert config.project == "Fabrikam"
        assert config.pat == "secret-pat"
        assert config.chunk_size == 1024
        # Threshold follows the chunk size unless set explicitly
        assert config.single_upload_threshold == 1024
        assert config.dedup_scope == DedupScope.GLOBAL
        assert config.run_workers is False
        assert config.api_key == "k"
