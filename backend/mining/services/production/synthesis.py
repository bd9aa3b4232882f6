import random
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List

from flask import current_app

from mining.errors import InvalidRequest
from mining.models import ResourceType
from .ledger import ResourceLedger
from .recipes import SynthesisRecipe
from .tools import ToolRegistry


@dataclass
class SynthesisResult:
    recipe: SynthesisRecipe
    quantity: int
    items_created: List[dict] = field(default_factory=list)
    resources_consumed: Dict[str, Decimal] = field(default_factory=dict)
    successes: int = 0

    def to_dict(self) -> dict:
        return {
            'items_created': self.items_created,
            'resources_consumed': {k: str(v) for k, v in self.resources_consumed.items()},
            'attempted': self.quantity,
            'succeeded': self.successes,
        }


class SynthesisEngine:
    def __init__(self, ledger: ResourceLedger, tools: ToolRegistry, rng: random.Random = None, max_quantity: int = 100):
        self.ledger = ledger
        self.tools = tools
        self.rng = rng or random.Random()
        self.max_quantity = max_quantity

    def check_quantity(self, quantity) -> int:
        if isinstance(quantity, bool):
            raise InvalidRequest('Quantity must be an integer')
        try:
            qty = int(quantity)
        except (TypeError, ValueError):
            raise InvalidRequest(f'Quantity must be an integer, got {quantity!r}')
        if isinstance(quantity, float) and not quantity.is_integer():
            raise InvalidRequest(f'Quantity must be an integer, got {quantity!r}')
        if qty < 1:
            raise InvalidRequest('Quantity must be at least 1')
        if qty > self.max_quantity:
            raise InvalidRequest(f'Quantity must be at most {self.max_quantity}')
        return qty

    def synthesize(self, user_id: int, recipe: SynthesisRecipe, quantity, now=None) -> SynthesisResult:
        """Debit the full cost of ``quantity`` units, then roll each unit.

        The debit is all-or-nothing and happens before any roll. Failed
        rolls keep the resources consumed.
        """
        qty = self.check_quantity(quantity)
        result = SynthesisResult(recipe=recipe, quantity=qty)
        result.resources_consumed = self.ledger.debit_many(
            user_id, recipe.cost(qty), reason='synthesis', reference=recipe.output
        )

        bricks = 0
        for _ in range(qty):
            if self.rng.random() >= float(recipe.success_rate):
                continue
            result.successes += 1
            if recipe.is_tool:
                for _ in range(recipe.output_quantity):
                    tool = self.tools.create(user_id, recipe.output, recipe.durability, now)
                    result.items_created.append({
                        'id': tool.id,
                        'item_id': tool.tool_id,
                        'item_type': tool.tool_type.value,
                    })
            else:
                bricks += recipe.output_quantity
                result.items_created.append({
                    'id': None,
                    'item_id': None,
                    'item_type': recipe.output,
                    'quantity': recipe.output_quantity,
                })
        if bricks:
            self.ledger.credit(user_id, ResourceType.BRICK, bricks, reason='synthesis', reference=recipe.output)

        current_app.logger.info(
            f"[synthesis] user={user_id} output={recipe.output} attempted={qty} succeeded={result.successes}"
        )
        return result
