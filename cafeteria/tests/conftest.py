"""
测试配置文件
提供测试所需的fixtures和配置
"""

from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from ..api.deps import get_order_service
from ..app import create_app
from ..config.settings import Settings
from ..core.cache import TTLCache
from ..core.database import DatabaseManager
from ..core.exceptions import GatewayError
from ..core.security import SecurityManager
from ..models.order import ItemCategory
from ..models.user import ChildRef, UserProfile, UserRole
from ..services.order_service import OrderService
from ..services.order_store import OrderStore
from ..services.payment_gateway import GetNetGateway, PaymentIntent, PaymentIntentRequest
from ..services.payment_reconciler import PaymentReconciler
from ..services.pricing import PriceTable

# 2024-03-04 是周一
WEEK = date(2024, 3, 4)
MONDAY = WEEK
TUESDAY = WEEK + timedelta(days=1)
WEDNESDAY = WEEK + timedelta(days=2)

LUNCH_PRICE = 3000
SNACK_PRICE = 1500


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs):
        self.now = self.now + timedelta(seconds=seconds, **kwargs)


class FakeGateway(GetNetGateway):
    """不发起网络请求的网关，回调解析沿用 GetNet 的实现"""

    def __init__(self, config: Settings, clock):
        super().__init__(config=config, clock=clock)
        self.requests: List[PaymentIntentRequest] = []
        self.fail_with: Optional[GatewayError] = None

    def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntent:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        ref = f"req-{len(self.requests)}"
        return PaymentIntent(transaction_ref=ref, redirect_url=f"https://pay.test/session/{ref}")


def lunch(name: str = "Pollo", code: str = "L1") -> dict:
    return {"code": code, "name": name, "price": LUNCH_PRICE}


def snack(name: str = "Fruta", code: str = "S1") -> dict:
    return {"code": code, "name": name, "price": SNACK_PRICE}


def signed_callback(gateway: GetNetGateway, order_id: str, status: str = "APPROVED",
                    request_id: str = "req-1") -> dict:
    """带有效签名的网关回调"""
    sent_at = "2024-03-01T12:00:00+00:00"
    return {
        "status": {"status": status, "message": "gateway", "date": sent_at},
        "requestId": request_id,
        "reference": order_id,
        "signature": gateway.callback_signature(request_id, status, sent_at),
    }


def entry(day: date, child: Optional[str] = "c1", lunch_item=None, snack_item=None) -> dict:
    raw = {"date": day.isoformat()}
    if child is not None:
        raw["childRef"] = child
    if lunch_item is not None:
        raw["lunchItem"] = lunch_item
    if snack_item is not None:
        raw["snackItem"] = snack_item
    return raw


@pytest.fixture
def test_settings():
    """测试环境配置"""
    return Settings(
        _env_file=None,
        database_url="duckdb://:memory:",
        jwt_secret_key="test-secret-key",
        getnet_login="test-login",
        getnet_secret="test-secret",
        getnet_verify_signature=True,
        app_public_url="https://cafeteria.test",
        manual_reconcile_after_seconds=30,
        simulate_on_return=False,
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def price_table():
    """固定价格表：午餐 3000，加餐 1500"""
    return PriceTable({
        (UserRole.GUARDIAN, ItemCategory.LUNCH): LUNCH_PRICE,
        (UserRole.GUARDIAN, ItemCategory.SNACK): SNACK_PRICE,
        (UserRole.STAFF, ItemCategory.LUNCH): LUNCH_PRICE,
        (UserRole.STAFF, ItemCategory.SNACK): SNACK_PRICE,
    })


@pytest.fixture
def test_db():
    """内存数据库"""
    db = DatabaseManager(":memory:")
    yield db
    db.close()


@pytest.fixture
def store(test_db, clock):
    return OrderStore(test_db, cache=TTLCache(60), clock=clock)


@pytest.fixture
def gateway(test_settings, clock):
    return FakeGateway(test_settings, clock)


@pytest.fixture
def reconciler(store, gateway, price_table, test_settings, clock):
    return PaymentReconciler(store=store, gateway=gateway, price_table=price_table,
                             config=test_settings, clock=clock)


@pytest.fixture
def order_service(store, reconciler, price_table, clock):
    return OrderService(store=store, reconciler=reconciler, price_table=price_table, clock=clock)


@pytest.fixture
def guardian():
    """家长用户，登记了两个孩子"""
    return UserProfile(
        user_id="u-guardian",
        role=UserRole.GUARDIAN,
        email="maria.perez@example.com",
        name="Maria Perez",
        children=[ChildRef(child_id="c1", name="Ana"), ChildRef(child_id="c2", name="Luis")],
    )


@pytest.fixture
def staff():
    return UserProfile(user_id="u-staff", role=UserRole.STAFF, email="profe@example.com")


@pytest.fixture
def admin():
    return UserProfile(user_id="u-admin", role=UserRole.STAFF, email="admin@example.com", is_admin=True)


@pytest.fixture
def app_instance(order_service):
    """测试应用，服务实例替换为内存数据库版本"""
    app = create_app()
    app.dependency_overrides[get_order_service] = lambda: order_service
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app_instance):
    """测试客户端"""
    return TestClient(app_instance)


@pytest.fixture
def security():
    from ..config.settings import settings
    return SecurityManager(settings)


@pytest.fixture
def auth_headers(security, guardian):
    """家长认证请求头"""
    return {"Authorization": f"Bearer {security.create_jwt_token(guardian)}"}


@pytest.fixture
def staff_headers(security, staff):
    return {"Authorization": f"Bearer {security.create_jwt_token(staff)}"}


@pytest.fixture
def admin_headers(security, admin):
    """管理员认证请求头"""
    return {"Authorization": f"Bearer {security.create_jwt_token(admin)}"}
