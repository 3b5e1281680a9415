"""
价格表
按（用户角色，餐品类别）查询单价，总价计算只使用这里的价格
"""

from typing import Dict, Mapping, Optional, Tuple, Union

from ..config.settings import Settings, settings as default_settings
from ..core.exceptions import ValidationError
from ..models.order import ItemCategory
from ..models.user import UserRole


class PriceTable:
    """角色价格表"""

    def __init__(self, prices: Mapping[Tuple[UserRole, ItemCategory], int]):
        self._prices: Dict[Tuple[UserRole, ItemCategory], int] = {
            (UserRole(role), ItemCategory(category)): int(amount)
            for (role, category), amount in prices.items()
        }

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "PriceTable":
        """从配置读取默认价格"""
        config = config or default_settings
        return cls({
            (UserRole.GUARDIAN, ItemCategory.LUNCH): config.price_guardian_lunch,
            (UserRole.GUARDIAN, ItemCategory.SNACK): config.price_guardian_snack,
            (UserRole.STAFF, ItemCategory.LUNCH): config.price_staff_lunch,
            (UserRole.STAFF, ItemCategory.SNACK): config.price_staff_snack,
        })

    def price(self, role: Union[UserRole, str], category: Union[ItemCategory, str]) -> int:
        """查询单价，未知角色或类别抛出 ValidationError"""
        try:
            key = (UserRole(role), ItemCategory(category))
        except ValueError:
            raise ValidationError(f"unknown role or category: {role}/{category}")
        if key not in self._prices:
            raise ValidationError(f"no price configured for {key[0].value}/{key[1].value}")
        return self._prices[key]
