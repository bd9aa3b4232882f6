from decimal import Decimal, ROUND_FLOOR
from typing import Callable, Mapping, Optional

from flask import current_app

from mining import db
from mining.errors import InvalidRequest, ToolAlreadyWorking, ToolDamaged, ToolNotBound, ToolNotFound
from mining.models import (
    MAX_DURABILITY,
    MiningSession,
    MiningType,
    SessionStatus,
    SessionTool,
    Tool,
    ToolStatus,
    ToolType,
    utcnow,
)
from .ledger import ZERO, quantize


KIND_CODES = {
    ToolType.PICKAXE: 'PK',
    ToolType.AXE: 'AX',
    ToolType.HOE: 'HO',
}

# Absorbs decimal division residue when a segment ends exactly at a break
_WEAR_TOLERANCE = Decimal('0.000001')


def to_tool_type(value) -> ToolType:
    try:
        return ToolType(getattr(value, 'value', value))
    except ValueError:
        raise InvalidRequest(f'Unknown tool type: {value!r}')


class ToolRegistry:
    """Tool identity, durability and status.

    ``on_damaged(session, tool, now)`` is called after wear breaks a bound
    tool and unbinds it, so the session owner can recompute its rates.
    """

    def __init__(self, wear_rates: Mapping[str, str]):
        self.wear_rates = {to_tool_type(k): Decimal(str(v)) for k, v in wear_rates.items()}
        self.on_damaged: Optional[Callable] = None

    def create(self, owner_id: int, tool_type, durability: int = None, now=None) -> Tool:
        tt = to_tool_type(tool_type)
        now = now or utcnow()
        full = int(durability or MAX_DURABILITY)
        tool = Tool(
            tool_type=tt,
            owner_id=owner_id,
            durability=full,
            max_durability=full,
            wear_remainder=ZERO,
            status=ToolStatus.IDLE,
            created_at=now,
        )
        db.session.add(tool)
        db.session.flush()
        tool.tool_id = f"{KIND_CODES[tt]}-{now:%Y%m%d}-{tool.id:08d}"
        current_app.logger.info(f"[tool-create] tool={tool.tool_id} owner={owner_id}")
        return tool

    @staticmethod
    def _lookup(tool_ref):
        # Row id (int or digit string) or the PK-/AX-/HO- code
        if isinstance(tool_ref, str) and not tool_ref.isdigit():
            return Tool.query.filter_by(tool_id=tool_ref)
        if isinstance(tool_ref, bool):
            raise InvalidRequest(f'Invalid tool id: {tool_ref!r}')
        try:
            pk = int(tool_ref)
        except (TypeError, ValueError):
            raise InvalidRequest(f'Invalid tool id: {tool_ref!r}')
        return Tool.query.filter_by(id=pk)

    @staticmethod
    def matches(tool: Tool, tool_ref) -> bool:
        if isinstance(tool_ref, str) and not tool_ref.isdigit():
            return tool.tool_id == tool_ref
        try:
            return tool.id == int(tool_ref)
        except (TypeError, ValueError):
            raise InvalidRequest(f'Invalid tool id: {tool_ref!r}')

    def resolve_pk(self, tool_ref) -> int:
        """Row id for a tool reference, used to build lock keys."""
        tool = self._lookup(tool_ref).first()
        if tool is None:
            raise ToolNotFound(f'Tool {tool_ref} not found', {'tool_id': tool_ref})
        return tool.id

    def get_owned(self, owner_id: int, tool_ref) -> Tool:
        tool = self._lookup(tool_ref).with_for_update().first()
        if not tool or tool.owner_id != owner_id:
            raise ToolNotFound(f'Tool {tool_ref} not found', {'tool_id': tool_ref})
        return tool

    def wear_rate(self, tool: Tool) -> Decimal:
        return self.wear_rates.get(tool.tool_type, ZERO)

    def hours_until_broken(self, tool: Tool) -> Optional[Decimal]:
        rate = self.wear_rate(tool)
        if rate <= 0:
            return None
        return max(ZERO, (Decimal(tool.durability) - tool.wear_remainder) / rate)

    def check_bindable(self, tool: Tool, session: MiningSession = None) -> None:
        if tool.status == ToolStatus.DAMAGED:
            raise ToolDamaged(f'Tool {tool.tool_id} is damaged', {'tool_id': tool.tool_id})
        if tool.status != ToolStatus.IDLE or tool.current_session_id is not None:
            raise ToolAlreadyWorking(f'Tool {tool.tool_id} is already working', {'tool_id': tool.tool_id})
        if tool.deposited_land_id is not None:
            hired_here = (
                session is not None
                and session.mining_type == MiningType.HIRED_WITHOUT_TOOL
                and session.land_id == tool.deposited_land_id
            )
            if not hired_here:
                raise ToolAlreadyWorking(
                    f'Tool {tool.tool_id} is deposited for recruitment',
                    {'tool_id': tool.tool_id, 'land': tool.deposited_land_id},
                )

    def bind(self, tool: Tool, session: MiningSession, now=None) -> SessionTool:
        self.check_bindable(tool, session)
        now = now or utcnow()
        position = max((b.position for b in session.bindings), default=-1) + 1
        binding = SessionTool(
            session=session,
            tool=tool,
            position=position,
            bound_at=now,
            durability_at_bind=tool.durability,
        )
        db.session.add(binding)
        tool.current_session_id = session.id
        tool.status = ToolStatus.WORKING if session.status == SessionStatus.ACTIVE else ToolStatus.IDLE
        tool.last_used_at = now
        return binding

    def unbind(self, tool: Tool, session: MiningSession, now=None) -> SessionTool:
        binding = next((b for b in session.active_bindings if b.tool_id == tool.id), None)
        if binding is None or tool.current_session_id != session.id:
            raise ToolNotBound(
                f'Tool {tool.tool_id} is not bound to session {session.session_id}',
                {'tool_id': tool.tool_id, 'session_id': session.session_id},
            )
        now = now or utcnow()
        binding.unbound_at = now
        binding.durability_at_unbind = tool.durability
        tool.current_session_id = None
        tool.status = ToolStatus.IDLE if tool.durability > 0 else ToolStatus.DAMAGED
        tool.last_used_at = now
        return binding

    def set_working(self, tool: Tool, working: bool) -> None:
        """Mirror the bound session's activity onto the tool status."""
        if tool.durability <= 0:
            tool.status = ToolStatus.DAMAGED
        else:
            tool.status = ToolStatus.WORKING if working else ToolStatus.IDLE

    def apply_wear(self, tool: Tool, hours, now=None) -> int:
        """Take ``hours`` of work off a tool's durability; returns the decrement.

        Wear is ``wear_rate × hours`` plus the remainder carried from earlier
        calls, so splitting a window never changes the total. A tool that
        reaches zero is damaged and unbound from its session.
        """
        hours = Decimal(hours)
        if hours <= 0 or tool.durability <= 0:
            return 0
        total = tool.wear_remainder + self.wear_rate(tool) * hours
        whole = int((total + _WEAR_TOLERANCE).to_integral_value(rounding=ROUND_FLOOR))
        decrement = min(whole, tool.durability)
        tool.durability -= decrement
        tool.wear_remainder = quantize(max(ZERO, total - whole)) if tool.durability > 0 else ZERO
        if tool.durability == 0:
            self._break(tool, now or utcnow())
        return decrement

    def _break(self, tool: Tool, now) -> None:
        session = db.session.get(MiningSession, tool.current_session_id) if tool.current_session_id else None
        current_app.logger.info(
            f"[tool-broken] tool={tool.tool_id} session={session.session_id if session else None}"
        )
        if session is None:
            tool.status = ToolStatus.DAMAGED
            return
        self.unbind(tool, session, now)
        if self.on_damaged:
            self.on_damaged(session, tool, now)

    def deposit(self, owner_id: int, land, tool_pks) -> list:
        tools = [self.get_owned(owner_id, pk) for pk in tool_pks]
        for tool in tools:
            self.check_bindable(tool)
        for tool in tools:
            tool.deposited_land_id = land.id
        current_app.logger.info(f"[tool-deposit] land={land.land_id} tools={[t.tool_id for t in tools]}")
        return tools

    def withdraw(self, owner_id: int, land, tool_pks) -> list:
        tools = [self.get_owned(owner_id, pk) for pk in tool_pks]
        for tool in tools:
            if tool.deposited_land_id != land.id:
                raise ToolNotBound(f'Tool {tool.tool_id} is not deposited on land {land.land_id}', {'tool_id': tool.tool_id})
            if tool.current_session_id is not None:
                raise ToolAlreadyWorking(f'Tool {tool.tool_id} is in use by a hired worker', {'tool_id': tool.tool_id})
        for tool in tools:
            tool.deposited_land_id = None
        return tools

    def deposited_idle(self, land) -> Optional[Tool]:
        return (
            Tool.query
            .filter_by(deposited_land_id=land.id, status=ToolStatus.IDLE, current_session_id=None)
            .order_by(Tool.id)
            .with_for_update()
            .first()
        )

    @staticmethod
    def stats(owner_id: int) -> dict:
        tools = Tool.query.filter_by(owner_id=owner_id).all()
        return {
            'total_tools': len(tools),
            'by_type': {tt.value: sum(1 for t in tools if t.tool_type == tt) for tt in ToolType},
            'by_status': {st.value: sum(1 for t in tools if t.status == st) for st in ToolStatus},
        }
