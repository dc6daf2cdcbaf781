"""Run ledger + usage gate."""

from reportbot.core.runs.ledger import RunLedger
from reportbot.core.runs.usage import UsageGate

__all__ = ["RunLedger", "UsageGate"]
