"""Per-provider command lines for one gardening phase."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from ..project import GardenerConfig, resolve_executable, resolve_model, resolve_timeout
from .runner import ProviderRunError

PROMPTS_DIR = "prompts"
CONTEXT_FILE = "context.md"
PHASE_PROMPTS = {
    "seed": "seed.md",
    "nurture": "nurture.md",
    "tend": "tend.md",
    "all": "garden.md",
}


@dataclass(slots=True)
class ProviderCommand:
    """Everything needed to launch the configured provider for a phase."""

    provider: str
    executable: str
    args: tuple[str, ...]
    model: str
    timeout: int
    prompt_file: Path
    context_file: Path
    env: dict[str, str] = field(default_factory=dict)


def prompt_path(state_dir: Path, phase: str) -> Path:
    return Path(state_dir) / PROMPTS_DIR / PHASE_PROMPTS[phase]


def build_command(
    config: GardenerConfig,
    phase: str,
    state_dir: Path,
    *,
    environ: Mapping[str, str] | None = None,
) -> ProviderCommand:
    """Translate the resolved configuration into a provider command line.

    Credentials the provider needs are passed through ``env`` explicitly since
    the subprocess environment is otherwise filtered.
    """

    if phase not in PHASE_PROMPTS:
        raise ValueError(f'Invalid phase "{phase}". Use: seed, nurture, tend, or all')

    source = os.environ if environ is None else environ
    settings = config.provider_settings()
    model = resolve_model(config)
    prompt_file = prompt_path(state_dir, phase)
    context_file = Path(state_dir) / CONTEXT_FILE
    env: dict[str, str] = {}

    if config.provider == "claude":
        prompt = f"Read {context_file} for vault context, then read {prompt_file} and execute all steps."
        args = ["--dangerously-skip-permissions", "--model", model]
        if settings.max_turns:
            args += ["--max-turns", str(settings.max_turns)]
        args += ["-p", prompt]
        if source.get("ANTHROPIC_API_KEY"):
            env["ANTHROPIC_API_KEY"] = source["ANTHROPIC_API_KEY"]
    elif config.provider == "codex":
        prompt = f"Read {context_file} for vault context, then read {prompt_file} and execute all steps."
        args = ["--model", model, "--approval-mode", "full-auto", "-q", prompt]
        if source.get("OPENAI_API_KEY"):
            env["OPENAI_API_KEY"] = source["OPENAI_API_KEY"]
    else:
        try:
            env["GEMINI_SYSTEM_MD"] = context_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise ProviderRunError(f"Cannot read vault context {context_file}: {exc}") from exc
        args = ["-m", model, "-p", f"Read {prompt_file} and execute all steps."]

    return ProviderCommand(
        provider=config.provider,
        executable=resolve_executable(config),
        args=tuple(args),
        model=model,
        timeout=resolve_timeout(config),
        prompt_file=prompt_file,
        context_file=context_file,
        env=env,
    )


__all__ = ["CONTEXT_FILE", "PHASE_PROMPTS", "ProviderCommand", "build_command", "prompt_path"]
