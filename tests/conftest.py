from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from vault_gardener.config import GardenerSettings, get_settings


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("GARDENER_WEBHOOK_URL", "GARDENER_LOG_LEVEL", "GARDENER_DIR", "GARDENER_VERBOSE"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> GardenerSettings:
    return GardenerSettings(_env_file=None)


def write_config(state_dir: Path, body: str = "") -> Path:
    state_dir.mkdir(parents=True, exist_ok=True)
    path = state_dir / "config.yaml"
    path.write_text(textwrap.dedent(body).strip() + "\n", encoding="utf-8")
    return path


@pytest.fixture
def vault(tmp_path: Path) -> Path:
    """A minimal vault with config, prompts and context in place."""

    root = tmp_path / "vault"
    (root / "00-inbox").mkdir(parents=True)
    state_dir = root / ".gardener"
    write_config(
        state_dir,
        """
        provider: claude
        tier: fast
        claude:
          power_model: opus
          fast_model: sonnet
          timeout: 30
          executable: sh
        resilience:
          vault_quiet_seconds: 0
          min_free_disk_mb: 0
        """,
    )
    (state_dir / "prompts").mkdir()
    (state_dir / "prompts" / "garden.md").write_text("Garden.\n", encoding="utf-8")
    (state_dir / "context.md").write_text("Vault context.\n", encoding="utf-8")
    return root
