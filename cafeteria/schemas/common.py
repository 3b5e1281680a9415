from typing import Generic, TypeVar, Optional, Any, Dict

from pydantic import BaseModel, Field

T = TypeVar('T')


class ApiResponse(BaseModel, Generic[T]):
    """通用API响应格式"""
    success: bool = Field(description="请求是否成功")
    data: Optional[T] = Field(None, description="响应数据")
    message: Optional[str] = Field(None, description="响应消息")


class ErrorResponse(BaseModel):
    """错误响应格式"""
    success: bool = Field(False, description="请求失败")
    message: str = Field(description="错误消息")
    error_code: str = Field(description="错误码")
    details: Dict[str, Any] = Field(default_factory=dict, description="错误详情")

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": False,
                "message": "selection would pay again for already paid items: "
                           "date 2024-03-04, child Ana: lunch already paid as Pollo",
                "error_code": "DUPLICATE_SELECTION",
                "details": {"conflicts": []},
            }
        }
    }
