"""Static synthesis recipe table."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from mining.errors import InvalidRequest
from mining.models import MAX_DURABILITY, ResourceType, ToolType


BRICK = 'brick'


@dataclass(frozen=True)
class SynthesisRecipe:
    output: str
    iron_ratio: Decimal = Decimal('0')
    wood_ratio: Decimal = Decimal('0')
    stone_ratio: Decimal = Decimal('0')
    yld_cost: Decimal = Decimal('0')
    output_quantity: int = 1
    success_rate: Decimal = Decimal('1')
    durability: Optional[int] = None

    def __post_init__(self):
        if not Decimal('0') <= self.success_rate <= Decimal('1'):
            raise ValueError(f'success_rate must be within [0, 1], got {self.success_rate}')
        if self.output_quantity < 1:
            raise ValueError(f'output_quantity must be >= 1, got {self.output_quantity}')

    @property
    def is_tool(self) -> bool:
        return self.output != BRICK

    def cost(self, quantity: int) -> Dict[ResourceType, Decimal]:
        per_unit = {
            ResourceType.IRON: self.iron_ratio,
            ResourceType.WOOD: self.wood_ratio,
            ResourceType.STONE: self.stone_ratio,
            ResourceType.YLD: self.yld_cost,
        }
        return {rt: ratio * quantity for rt, ratio in per_unit.items() if ratio}

    def to_dict(self) -> dict:
        materials = {
            'iron': str(self.iron_ratio),
            'wood': str(self.wood_ratio),
        }
        if self.stone_ratio:
            materials['stone'] = str(self.stone_ratio)
        payload = {
            'tool_type': self.output,
            'materials': {k: v for k, v in materials.items() if Decimal(v)},
            'yld_cost': str(self.yld_cost),
            'output_quantity': self.output_quantity,
            'success_rate': str(self.success_rate),
        }
        if self.durability is not None:
            payload['durability'] = self.durability
        return payload


RECIPES: Dict[str, SynthesisRecipe] = {
    ToolType.PICKAXE.value: SynthesisRecipe(
        output=ToolType.PICKAXE.value,
        iron_ratio=Decimal('70'),
        wood_ratio=Decimal('30'),
        yld_cost=Decimal('0.08'),
        success_rate=Decimal('0.95'),
        durability=MAX_DURABILITY,
    ),
    ToolType.AXE.value: SynthesisRecipe(
        output=ToolType.AXE.value,
        iron_ratio=Decimal('60'),
        wood_ratio=Decimal('40'),
        yld_cost=Decimal('0.08'),
        success_rate=Decimal('0.95'),
        durability=MAX_DURABILITY,
    ),
    ToolType.HOE.value: SynthesisRecipe(
        output=ToolType.HOE.value,
        iron_ratio=Decimal('50'),
        wood_ratio=Decimal('50'),
        yld_cost=Decimal('0.08'),
        success_rate=Decimal('0.95'),
        durability=MAX_DURABILITY,
    ),
    BRICK: SynthesisRecipe(
        output=BRICK,
        stone_ratio=Decimal('80'),
        wood_ratio=Decimal('20'),
        yld_cost=Decimal('0.08'),
        output_quantity=100,
        success_rate=Decimal('1'),
    ),
}


def get_recipe(output) -> SynthesisRecipe:
    key = getattr(output, 'value', output)
    recipe = RECIPES.get(key)
    if recipe is None:
        raise InvalidRequest(f'No recipe for {output!r}', {'available': sorted(RECIPES)})
    return recipe
