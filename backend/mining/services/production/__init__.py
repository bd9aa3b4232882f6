"""Production economy services: ledger, tools, synthesis, sessions, settlement.

Pure(ish) domain logic imported by the HTTP routes, the settlement scheduler
and CLI commands. Transport concerns (JSON envelopes, Socket.IO pushes) stay
in the blueprint.
"""

from .engine import ProductionEngine
from .ledger import ResourceLedger
from .locks import KeyedLocks
from .quota import DailyQuota
from .reports import ProductionReports
from .sessions import Economy, MiningSessionManager
from .settlement import SettlementEngine, SettlementResult
from .synthesis import SynthesisEngine, SynthesisResult
from .tools import ToolRegistry

__all__ = [
    'DailyQuota',
    'Economy',
    'KeyedLocks',
    'MiningSessionManager',
    'ProductionEngine',
    'ProductionReports',
    'ResourceLedger',
    'SettlementEngine',
    'SettlementResult',
    'SynthesisEngine',
    'SynthesisResult',
    'ToolRegistry',
]
