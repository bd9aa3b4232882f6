import enum
from datetime import datetime, timezone
from decimal import Decimal

from flask_login import UserMixin

from mining import db


def utcnow():
    """Naive UTC timestamp; every persisted datetime uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


def _dec(value):
    return str(value if value is not None else Decimal('0'))


class ToolType(str, enum.Enum):
    PICKAXE = 'pickaxe'
    AXE = 'axe'
    HOE = 'hoe'


class ToolStatus(str, enum.Enum):
    IDLE = 'idle'
    WORKING = 'working'
    DAMAGED = 'damaged'


class ResourceType(str, enum.Enum):
    WOOD = 'wood'
    IRON = 'iron'
    STONE = 'stone'
    YLD = 'yld'
    GRAIN = 'grain'
    SEED = 'seed'
    BRICK = 'brick'


class LandType(str, enum.Enum):
    IRON_MINE = 'iron_mine'
    STONE_MINE = 'stone_mine'
    FOREST = 'forest'
    FARM = 'farm'
    YLD_MINE = 'yld_mine'
    URBAN = 'urban'
    RESIDENTIAL = 'residential'
    COMMERCIAL = 'commercial'
    INDUSTRIAL = 'industrial'


class MiningType(str, enum.Enum):
    SELF = 'self'
    HIRED_WITH_TOOL = 'hired_with_tool'
    HIRED_WITHOUT_TOOL = 'hired_without_tool'


class SessionStatus(str, enum.Enum):
    ACTIVE = 'active'
    PAUSED = 'paused'
    COMPLETED = 'completed'


class LedgerOperation(str, enum.Enum):
    CREDIT = 'credit'
    DEBIT = 'debit'
    FREEZE = 'freeze'
    UNFREEZE = 'unfreeze'
    CONSUME_FROZEN = 'consume_frozen'


MAX_DURABILITY = 1500

# Land type -> resource it yields
LAND_RESOURCES = {
    LandType.IRON_MINE: ResourceType.IRON,
    LandType.STONE_MINE: ResourceType.STONE,
    LandType.FOREST: ResourceType.WOOD,
    LandType.FARM: ResourceType.GRAIN,
    LandType.YLD_MINE: ResourceType.YLD,
}

# Tool type -> land types it can work
TOOL_LANDS = {
    ToolType.PICKAXE: {LandType.IRON_MINE, LandType.STONE_MINE, LandType.YLD_MINE},
    ToolType.AXE: {LandType.FOREST},
    ToolType.HOE: {LandType.FARM},
}


def _enum(enum_cls):
    return db.Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


def _amount(**kwargs):
    return db.Column(db.Numeric(20, 8), nullable=False, default=Decimal('0'), **kwargs)


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
        }


class Land(db.Model):
    """Projection of a land parcel owned and priced by an external service."""
    __tablename__ = 'land'
    id = db.Column(db.Integer, primary_key=True)
    land_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    land_type = db.Column(_enum(LandType), nullable=False)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    region_name = db.Column(db.String(128), nullable=True)
    is_available = db.Column(db.Boolean, default=True, nullable=False)

    owner = db.relationship('User')

    @property
    def resource_type(self):
        return LAND_RESOURCES.get(self.land_type)

    def to_dict(self):
        return {
            'id': self.id,
            'land_id': self.land_id,
            'land_type': self.land_type.value,
            'owner': self.owner_id,
            'region_name': self.region_name,
            'resource_type': self.resource_type.value if self.resource_type else None,
            'is_available': self.is_available,
        }


class Tool(db.Model):
    __tablename__ = 'tool'
    id = db.Column(db.Integer, primary_key=True)
    # Assigned right after the first flush, from the row id
    tool_id = db.Column(db.String(32), unique=True, nullable=True, index=True)
    tool_type = db.Column(_enum(ToolType), nullable=False)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    durability = db.Column(db.Integer, nullable=False, default=MAX_DURABILITY)
    max_durability = db.Column(db.Integer, nullable=False, default=MAX_DURABILITY)
    # Fractional wear not yet taken off the integer durability
    wear_remainder = _amount()
    status = db.Column(_enum(ToolStatus), nullable=False, default=ToolStatus.IDLE, index=True)
    current_session_id = db.Column(db.Integer, db.ForeignKey('mining_session.id'), nullable=True, index=True)
    deposited_land_id = db.Column(db.Integer, db.ForeignKey('land.id'), nullable=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    last_used_at = db.Column(db.DateTime, nullable=True)

    owner = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'tool_id': self.tool_id,
            'tool_type': self.tool_type.value,
            'owner': self.owner_id,
            'owner_username': self.owner.username if self.owner else None,
            'durability': self.durability,
            'max_durability': self.max_durability,
            'status': self.status.value,
            'current_session': self.current_session_id,
            'deposited_land': self.deposited_land_id,
            'created_at': _iso(self.created_at),
            'last_used_at': _iso(self.last_used_at),
        }


class UserResource(db.Model):
    __tablename__ = 'user_resource'
    __table_args__ = (db.UniqueConstraint('user_id', 'resource_type', name='uq_user_resource'),)
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    resource_type = db.Column(_enum(ResourceType), nullable=False)
    amount = _amount()
    frozen_amount = _amount()
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def available_amount(self):
        return (self.amount or Decimal('0')) - (self.frozen_amount or Decimal('0'))

    def to_dict(self):
        return {
            'user': self.user_id,
            'resource_type': self.resource_type.value,
            'amount': _dec(self.amount),
            'frozen_amount': _dec(self.frozen_amount),
            'available_amount': _dec(self.available_amount),
            'updated_at': _iso(self.updated_at),
        }


class ResourceTransaction(db.Model):
    """Append-only journal of ledger mutations."""
    __tablename__ = 'resource_transaction'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    resource_type = db.Column(_enum(ResourceType), nullable=False)
    operation = db.Column(_enum(LedgerOperation), nullable=False)
    quantity = _amount()
    reason = db.Column(db.String(64), nullable=False)
    reference = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class MiningSession(db.Model):
    __tablename__ = 'mining_session'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(32), unique=True, nullable=True, index=True)
    land_id = db.Column(db.Integer, db.ForeignKey('land.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    mining_type = db.Column(_enum(MiningType), nullable=False)
    status = db.Column(_enum(SessionStatus), nullable=False, default=SessionStatus.ACTIVE, index=True)
    resource_type = db.Column(_enum(ResourceType), nullable=False)
    output_rate = _amount()
    tax_rate = _amount()
    user_share_rate = _amount()
    grain_consumption_rate = _amount()
    accumulated_output = _amount()
    accumulated_tax = _amount()
    accumulated_owner_output = _amount()
    collected_output = _amount()
    grain_consumed = _amount()
    paused_reason = db.Column(db.String(64), nullable=True)
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=True)
    last_settlement_time = db.Column(db.DateTime, nullable=True)

    land = db.relationship('Land')
    user = db.relationship('User')
    bindings = db.relationship(
        'SessionTool',
        back_populates='session',
        order_by='SessionTool.position',
        lazy='select',
    )

    @property
    def active_bindings(self):
        return [b for b in self.bindings if b.unbound_at is None]

    @property
    def tools(self):
        return [b.tool for b in self.active_bindings]

    @property
    def pending_output(self):
        return (self.accumulated_output or Decimal('0')) - (self.collected_output or Decimal('0'))

    def to_dict(self, grain_available=None):
        land = self.land
        payload = {
            'id': self.id,
            'session_id': self.session_id,
            'land': self.land_id,
            'land_info': {
                'land_id': land.land_id,
                'land_type': land.land_type.value,
                'region_name': land.region_name,
            } if land else None,
            'user': self.user_id,
            'user_username': self.user.username if self.user else None,
            'mining_type': self.mining_type.value,
            'status': self.status.value,
            'resource_type': self.resource_type.value,
            'output_rate': _dec(self.output_rate),
            'tax_rate': _dec(self.tax_rate),
            'user_share_rate': _dec(self.user_share_rate),
            'accumulated_output': _dec(self.accumulated_output),
            'accumulated_tax': _dec(self.accumulated_tax),
            'collected_output': _dec(self.collected_output),
            'pending_output': _dec(self.pending_output),
            'grain_consumed': _dec(self.grain_consumed),
            'paused_reason': self.paused_reason,
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'last_settlement_time': _iso(self.last_settlement_time),
            'tools': [
                {
                    'id': t.id,
                    'tool_id': t.tool_id,
                    'tool_type': t.tool_type.value,
                    'durability': t.durability,
                }
                for t in self.tools
            ],
            'grain_consumption_rate': _dec(self.grain_consumption_rate),
        }
        if grain_available is not None:
            payload['is_grain_sufficient'] = grain_available >= (self.grain_consumption_rate or 0)
        return payload


class SessionTool(db.Model):
    """Binding of a tool to a session; rows with unbound_at null form the active set."""
    __tablename__ = 'session_tool'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('mining_session.id'), nullable=False, index=True)
    tool_id = db.Column(db.Integer, db.ForeignKey('tool.id'), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)
    bound_at = db.Column(db.DateTime, nullable=False)
    unbound_at = db.Column(db.DateTime, nullable=True)
    durability_at_bind = db.Column(db.Integer, nullable=False)
    durability_at_unbind = db.Column(db.Integer, nullable=True)

    session = db.relationship('MiningSession', back_populates='bindings')
    tool = db.relationship('Tool')


class SettlementRecord(db.Model):
    __tablename__ = 'settlement_record'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('mining_session.id'), nullable=False, index=True)
    window_start = db.Column(db.DateTime, nullable=False)
    window_end = db.Column(db.DateTime, nullable=False)
    hours = _amount()
    output_rate = _amount()
    tool_count = db.Column(db.Integer, nullable=False, default=0)
    gross_output = _amount()
    tax = _amount()
    user_output = _amount()
    owner_output = _amount()
    grain_consumed = _amount()
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'window_start': _iso(self.window_start),
            'window_end': _iso(self.window_end),
            'hours': _dec(self.hours),
            'rate': _dec(self.output_rate),
            'tools': self.tool_count,
            'gross_output': _dec(self.gross_output),
            'tax': _dec(self.tax),
            'user_output': _dec(self.user_output),
            'owner_output': _dec(self.owner_output),
            'grain_consumed': _dec(self.grain_consumed),
        }
