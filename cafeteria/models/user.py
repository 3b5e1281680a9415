"""
用户相关数据模型
用户资料由认证层（JWT 声明）提供，核心业务只接收该值对象
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class UserRole(str, Enum):
    """用户角色，同时决定价格档位"""
    GUARDIAN = "guardian"   # 家长，为已登记的孩子下单
    STAFF = "staff"         # 教职工，只为自己下单


class ChildRef(BaseModel):
    """已登记的孩子"""
    child_id: str = Field(..., min_length=1, description="孩子ID")
    name: str = Field("", description="孩子姓名")


class UserProfile(BaseModel):
    """下单用户档案"""
    user_id: str = Field(..., min_length=1, description="用户ID")
    role: UserRole = Field(..., description="用户角色")
    email: Optional[str] = Field(None, description="邮箱，支付网关必需")
    name: Optional[str] = Field(None, description="显示名")
    children: List[ChildRef] = Field(default_factory=list, description="已登记的孩子")
    is_admin: bool = Field(False, description="是否为管理员")

    @property
    def child_ids(self) -> List[str]:
        return [c.child_id for c in self.children]

    def child_name(self, child_id: Optional[str]) -> str:
        """按ID查找孩子姓名，教职工订单返回 staff"""
        if child_id is None:
            return "staff"
        for child in self.children:
            if child.child_id == child_id:
                return child.name or child_id
        return child_id
