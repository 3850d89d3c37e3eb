"""
apis/deps.py: 路由依赖装配

每个 getter 都是 FastAPI 依赖，测试可通过 ``app.dependency_overrides`` 换成假实现。
"""

import os
from functools import lru_cache
from typing import Dict

from fastapi import Depends

from core.auth import get_current_user
from core.config import cfg
from core.db import Db
from core.generation_poller import GenerationPoller
from core.ledger_store import LedgerStore
from core.object_store import ObjectStore, QiniuObjectStore
from core.payment_gateway import PaymentGatewayClient
from core.reconciliation import GenerationReconciler, OrderReconciler

DB = Db()
LEDGER = LedgerStore(DB)


def get_ledger() -> LedgerStore:
    return LEDGER


def toss_secret_key() -> str:
    return os.environ.get("TOSS_SECRET_KEY") or cfg.get("payment.secret_key", "")


def toss_webhook_secret() -> str:
    return os.environ.get("TOSS_WEBHOOK_SECRET") or cfg.get("payment.webhook_secret", "")


@lru_cache(maxsize=1)
def _gateway() -> PaymentGatewayClient:
    return PaymentGatewayClient()


def get_order_reconciler(ledger: LedgerStore = Depends(get_ledger)) -> OrderReconciler:
    return OrderReconciler(
        ledger,
        _gateway(),
        secret_key=toss_secret_key(),
        webhook_secret=toss_webhook_secret(),
    )


@lru_cache(maxsize=1)
def get_object_store() -> ObjectStore:
    # 七牛未配置时抛 NotConfigured，失败不缓存
    return QiniuObjectStore()


@lru_cache(maxsize=1)
def _poller() -> GenerationPoller:
    return GenerationPoller()


def get_generation_reconciler(
    ledger: LedgerStore = Depends(get_ledger),
    store: ObjectStore = Depends(get_object_store),
) -> GenerationReconciler:
    ttl = int(cfg.get("ai.signed_url_ttl_seconds", 3600) or 3600)
    return GenerationReconciler(ledger, _poller(), store, url_ttl_seconds=ttl)


def require_user(
    user: Dict[str, str] = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger),
) -> Dict[str, str]:
    """已认证用户，并保证账本中存在对应用户行。"""
    ledger.ensure_user(user["id"], email=user.get("email", ""))
    return user
