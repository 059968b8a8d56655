"""Confirmation gate for fleet-wide scope and individual remediation actions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

from core.logging import logger as LOGGER


class GateDecision(str, Enum):
    """Three-valued answer to a confirmation request."""

    PROCEED = "proceed"
    CANCEL = "cancel"
    PREVIEW = "preview"

    @property
    def proceeds(self) -> bool:
        return self is not GateDecision.CANCEL


def console_prompt(question: str) -> bool:
    """Ask on the terminal; anything but y/yes is a refusal."""

    try:
        answer = input(f"{question} [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def refuse(_question: str) -> bool:
    return False


@dataclass(frozen=True)
class ConfirmationGate:
    """Yes/no gate satisfied interactively or by unattended mode.

    Dry-run always yields ``PREVIEW`` so callers make the same decisions and
    log the same lines without issuing mutating calls.
    """

    unattended: bool = False
    dry_run: bool = False
    prompt: Callable[[str], bool] = refuse

    def ask(self, question: str) -> GateDecision:
        if self.dry_run:
            LOGGER.info("[Gate] Preview only: %s", question)
            return GateDecision.PREVIEW
        if self.unattended:
            LOGGER.debug("[Gate] Unattended approval: %s", question)
            return GateDecision.PROCEED
        if self.prompt(question):
            return GateDecision.PROCEED
        LOGGER.info("[Gate] Declined: %s", question)
        return GateDecision.CANCEL

    def confirm_fleet(self, node_count: int | None = None) -> GateDecision:
        suffix = f" ({node_count} nodes)" if node_count is not None else ""
        return self.ask(f"Run against the entire fleet{suffix}?")

    def confirm_action(self, node: str, method: str, description: str) -> GateDecision:
        return self.ask(f"Run {method} on {node} to address: {description}?")
