"""
core/ledger_store.py: 账本存储（订单、余额、积分流水、生成图片来源记录）

每次余额变动都与解释它的 credit_transactions 行在同一个数据库事务内提交。
订单状态迁移是针对 ``status = 'pending'`` 的条件 UPDATE，
同一订单的 confirm / webhook / 重试并发调用只靠这一条件串行化。

首次出现的用户获得注册赠送额度（``credits.signup_bonus``），
以 (user_id, signup_bonus) 作为幂等键。
"""

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.config import cfg
from core.db import Db
from core.errors import (
    AlreadyProcessed,
    InvalidInput,
    NotFound,
    StorageUnavailable,
)
from core.events import log_event, E
from core.log import get_logger
from core.models.credit_transaction import CreditTransaction
from core.models.generated_image import GeneratedImage
from core.models.payment_event import PaymentEvent
from core.models.payment_order import PaymentOrder
from core.models.user import User

logger = get_logger(__name__)

ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_CONFIRMED = "confirmed"
ORDER_STATUS_FAILED = "failed"
ORDER_STATUS_CANCELED = "canceled"
ORDER_STATUS_EXPIRED = "expired"
ORDER_STATUS_ABORTED = "aborted"
ORDER_TERMINAL_STATUSES = {
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_FAILED,
    ORDER_STATUS_CANCELED,
    ORDER_STATUS_EXPIRED,
    ORDER_STATUS_ABORTED,
}

CREDIT_TYPE_PAID = "paid"
CREDIT_TYPE_GRANTED = "granted"

REASON_PURCHASE = "purchase"
REASON_SIGNUP_BONUS = "signup_bonus"

DEFAULT_SIGNUP_BONUS = 10

SNAPSHOT_CONFIRMED = "confirmed"
SNAPSHOT_FAILURE = "failure"
SNAPSHOT_WEBHOOK = "webhook"
SNAPSHOT_CANCELED = "canceled"


class GatewaySnapshot(BaseModel):
    """带类型标记的审计载荷，以 JSON 文本存入 ``payment_orders.gateway_response``。"""

    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    diagnostic: str = ""

    def dumps(self) -> str:
        return json.dumps(self.model_dump(), ensure_ascii=False)


def parse_snapshot(raw: Optional[str]) -> Optional[GatewaySnapshot]:
    if not raw:
        return None
    try:
        return GatewaySnapshot.model_validate(json.loads(raw))
    except (ValueError, ValidationError):
        # 旧数据没有类型标记，存的是裸字符串
        return GatewaySnapshot(kind="legacy", diagnostic=str(raw)[:2000])


def order_to_dict(order: PaymentOrder) -> Dict:
    snapshot = parse_snapshot(order.gateway_response)
    return {
        "order_id": order.id,
        "user_id": order.user_id,
        "package_id": order.package_id or "",
        "amount": int(order.amount or 0),
        "credits": int(order.credits or 0),
        "status": order.status,
        "payment_key": order.payment_key or "",
        "gateway_snapshot": snapshot.model_dump() if snapshot else None,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "confirmed_at": order.confirmed_at.isoformat() if order.confirmed_at else None,
    }


def transaction_to_dict(tx: CreditTransaction) -> Dict:
    return {
        "id": tx.id,
        "amount": int(tx.amount or 0),
        "credit_type": tx.credit_type,
        "reason": tx.reason,
        "reference_id": tx.reference_id,
        "balance_after": int(tx.balance_after or 0),
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
    }


def artifact_to_dict(item: GeneratedImage) -> Dict:
    return {
        "image_id": item.id,
        "job_id": item.job_id,
        "artifact_key": item.artifact_key,
        "original_artifact_key": item.original_artifact_key or "",
        "content_type": item.content_type or "image/png",
        "prompt": item.prompt or "",
        "user_id": item.user_id,
        "created_at": item.created_at.isoformat() if item.created_at else None,
    }


def new_order_id() -> str:
    return f"BT-{int(datetime.now().timestamp() * 1000)}-{uuid.uuid4().hex[:8]}"


class LedgerStore:
    def __init__(self, db: Db, signup_bonus: Optional[int] = None):
        self.db = db
        if signup_bonus is None:
            signup_bonus = int(cfg.get("credits.signup_bonus", DEFAULT_SIGNUP_BONUS))
        self.signup_bonus = max(0, int(signup_bonus))

    # ─── 用户 / 余额 ───────────────────────────────────────────────────────

    def ensure_user(self, user_id: str, email: str = "", nickname: str = "") -> User:
        """首次出现的用户建档并发放注册赠送额度；并发建档时只有提交成功的一方发放。"""
        uid = str(user_id or "").strip()
        if not uid:
            raise InvalidInput("user_id is required")
        session = self.db.get_session()
        try:
            user = session.get(User, uid)
            if user is None:
                now = datetime.now()
                user = User(
                    id=uid,
                    email=email or None,
                    nickname=nickname or "",
                    paid_credits=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(user)
                try:
                    session.commit()
                except IntegrityError:
                    # 其他请求已并发建档
                    session.rollback()
                    return session.get(User, uid)
                if self.signup_bonus:
                    self._grant_signup_bonus(uid)
                    user = session.get(User, uid, populate_existing=True)
            return user
        finally:
            session.close()

    def _grant_signup_bonus(self, user_id: str) -> None:
        try:
            self.grant_credits(user_id, self.signup_bonus, REASON_SIGNUP_BONUS, reference_id=user_id)
        except AlreadyProcessed:
            pass

    def get_balance(self, user_id: str) -> int:
        session = self.db.get_session()
        try:
            value = session.query(User.paid_credits).filter(User.id == user_id).scalar()
            if value is None:
                raise NotFound("user not found")
            return int(value)
        finally:
            session.close()

    def list_transactions(self, user_id: str, limit: int = 20, offset: int = 0) -> List[Dict]:
        session = self.db.get_session()
        try:
            rows = (
                session.query(CreditTransaction)
                .filter(CreditTransaction.user_id == user_id)
                .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                .offset(max(0, int(offset or 0)))
                .limit(max(1, min(int(limit or 20), 50)))
                .all()
            )
            return [transaction_to_dict(x) for x in rows]
        finally:
            session.close()

    def _apply_balance_change(
        self,
        session,
        user_id: str,
        amount: int,
        credit_type: str,
        reason: str,
        reference_id: Optional[str],
        tx_id: Optional[str],
        now: datetime,
    ) -> CreditTransaction:
        updated = session.query(User).filter(User.id == user_id).update(
            {User.paid_credits: User.paid_credits + amount, User.updated_at: now},
            synchronize_session=False,
        )
        if updated != 1:
            raise NotFound("user not found")
        balance = session.query(User.paid_credits).filter(User.id == user_id).scalar()
        tx = CreditTransaction(
            id=tx_id or str(uuid.uuid4()),
            user_id=user_id,
            amount=amount,
            credit_type=credit_type,
            reason=reason,
            reference_id=reference_id,
            balance_after=int(balance or 0),
            created_at=now,
        )
        session.add(tx)
        session.flush()
        return tx

    def _adjust(
        self,
        user_id: str,
        amount: int,
        credit_type: str,
        reason: str,
        reference_id: Optional[str],
    ) -> Dict:
        session = self.db.get_session()
        try:
            tx = self._apply_balance_change(
                session, user_id, amount, credit_type, reason, reference_id, None, datetime.now()
            )
            session.commit()
            return transaction_to_dict(tx)
        except IntegrityError:
            session.rollback()
            raise AlreadyProcessed(f"{reason} already applied for {reference_id}")
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageUnavailable("ledger write failed", diagnostic=str(e)[:300])
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def grant_credits(self, user_id: str, amount: int, reason: str, reference_id: Optional[str] = None) -> Dict:
        if int(amount) <= 0:
            raise InvalidInput("amount must be positive")
        tx = self._adjust(user_id, int(amount), CREDIT_TYPE_GRANTED, reason, reference_id)
        log_event(logger, E.CREDIT_GRANT, user_id=user_id, amount=amount, reason=reason, balance=tx["balance_after"])
        return tx

    # ─── 订单 ──────────────────────────────────────────────────────────────

    def create_order(self, user_id: str, amount: int, credits: int, package_id: str = "", order_id: str = "") -> PaymentOrder:
        if int(amount) <= 0 or int(credits) <= 0:
            raise InvalidInput("amount and credits must be positive")
        now = datetime.now()
        order = PaymentOrder(
            id=order_id or new_order_id(),
            user_id=user_id,
            package_id=package_id or None,
            amount=int(amount),
            credits=int(credits),
            status=ORDER_STATUS_PENDING,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.db.session_scope() as session:
                session.add(order)
        except IntegrityError:
            raise InvalidInput("order id already exists")
        log_event(logger, E.PAYMENT_ORDER_PREPARE, order_id=order.id, user_id=user_id, amount=amount, credits=credits)
        return order

    def get_order(self, order_id: str) -> Optional[PaymentOrder]:
        oid = str(order_id or "").strip()
        if not oid:
            return None
        session = self.db.get_session()
        try:
            return session.get(PaymentOrder, oid)
        finally:
            session.close()

    def _raise_for_lost_guard(self, session, order_id: str, user_id: Optional[str]) -> None:
        order = session.get(PaymentOrder, order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise NotFound("order not found")
        raise AlreadyProcessed(status=order.status)

    def credit_and_confirm(
        self,
        order_id: str,
        user_id: str,
        credits: int,
        gateway_snapshot: GatewaySnapshot,
        tx_id: Optional[str] = None,
        payment_key: str = "",
    ) -> Dict:
        """
        在同一事务内确认 pending 订单并为其所有者入账。

        （订单 → confirmed + 快照，余额 += credits，流水一行）要么全部生效要么都不生效。
        订单已不是 pending 时抛 AlreadyProcessed，订单号与用户不匹配时抛 NotFound。
        """
        now = datetime.now()
        session = self.db.get_session()
        try:
            updated = (
                session.query(PaymentOrder)
                .filter(
                    PaymentOrder.id == order_id,
                    PaymentOrder.user_id == user_id,
                    PaymentOrder.status == ORDER_STATUS_PENDING,
                )
                .update(
                    {
                        PaymentOrder.status: ORDER_STATUS_CONFIRMED,
                        PaymentOrder.payment_key: (payment_key or "")[:200] or None,
                        PaymentOrder.gateway_response: gateway_snapshot.dumps(),
                        PaymentOrder.confirmed_at: now,
                        PaymentOrder.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                session.rollback()
                self._raise_for_lost_guard(session, order_id, user_id)
            tx = self._apply_balance_change(
                session,
                user_id,
                int(credits),
                CREDIT_TYPE_PAID,
                REASON_PURCHASE,
                order_id,
                tx_id,
                now,
            )
            session.commit()
            return transaction_to_dict(tx)
        except IntegrityError:
            session.rollback()
            raise AlreadyProcessed(status=ORDER_STATUS_CONFIRMED)
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageUnavailable("ledger write failed", diagnostic=str(e)[:300])
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def transition_status(self, order_id: str, new_status: str, snapshot: Optional[GatewaySnapshot] = None) -> bool:
        """把 pending 订单迁移到不入账的终态；订单已不是 pending 时返回 False。"""
        if new_status not in ORDER_TERMINAL_STATUSES or new_status == ORDER_STATUS_CONFIRMED:
            raise InvalidInput(f"unsupported transition to {new_status}")
        values = {PaymentOrder.status: new_status, PaymentOrder.updated_at: datetime.now()}
        if snapshot is not None:
            values[PaymentOrder.gateway_response] = snapshot.dumps()
        session = self.db.get_session()
        try:
            updated = (
                session.query(PaymentOrder)
                .filter(PaymentOrder.id == order_id, PaymentOrder.status == ORDER_STATUS_PENDING)
                .update(values, synchronize_session=False)
            )
            session.commit()
            return updated == 1
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageUnavailable("ledger write failed", diagnostic=str(e)[:300])
        finally:
            session.close()

    def cancel_pending(self, order_id: str, user_id: str, reason: str = "") -> PaymentOrder:
        order = self.get_order(order_id)
        if order is None or order.user_id != user_id:
            raise NotFound("order not found")
        snapshot = GatewaySnapshot(kind=SNAPSHOT_CANCELED, diagnostic=(reason or "canceled by user")[:200])
        if self.transition_status(order_id, ORDER_STATUS_CANCELED, snapshot):
            log_event(logger, E.PAYMENT_ORDER_CANCEL, order_id=order_id, user_id=user_id)
        return self.get_order(order_id)

    def mark_failed(self, order_id: str, diagnostic: str) -> bool:
        """尽力记录一次失败的确认，不抛异常。"""
        try:
            snapshot = GatewaySnapshot(kind=SNAPSHOT_FAILURE, diagnostic=str(diagnostic or "")[:2000])
            applied = self.transition_status(order_id, ORDER_STATUS_FAILED, snapshot)
            log_event(logger, E.PAYMENT_MARK_FAILED, order_id=order_id, applied=applied)
            return applied
        except Exception as e:
            logger.error("mark_failed could not record failure: order_id=%s err=%s", order_id, e)
            return False

    # ─── Webhook 审计 ──────────────────────────────────────────────────────

    def record_payment_event(
        self,
        event_type: str,
        order_id: Optional[str],
        gateway_status: Optional[str],
        outcome: str,
        raw_body: str,
    ) -> bool:
        """尽力为已接受的 webhook 写审计行，不抛异常。"""
        session = None
        try:
            session = self.db.get_session()
            session.add(
                PaymentEvent(
                    id=str(uuid.uuid4()),
                    event_type=str(event_type or "")[:64],
                    order_id=str(order_id)[:64] if order_id else None,
                    gateway_status=str(gateway_status)[:32] if gateway_status else None,
                    outcome=outcome,
                    raw_body=str(raw_body or ""),
                    created_at=datetime.now(),
                )
            )
            session.commit()
            return True
        except Exception as e:
            if session is not None:
                session.rollback()
            log_event(logger, E.WEBHOOK_AUDIT_FAIL, level="warning", order_id=order_id, error=e)
            return False
        finally:
            if session is not None:
                session.close()

    # ─── 生成图片 ──────────────────────────────────────────────────────────

    def find_artifact(self, job_id: str) -> Optional[Dict]:
        session = self.db.get_session()
        try:
            item = session.query(GeneratedImage).filter(GeneratedImage.job_id == job_id).first()
            return artifact_to_dict(item) if item else None
        finally:
            session.close()

    def get_artifact(self, image_id: str) -> Optional[Dict]:
        session = self.db.get_session()
        try:
            item = session.get(GeneratedImage, image_id)
            return artifact_to_dict(item) if item else None
        finally:
            session.close()

    def record_artifact(
        self,
        job_id: str,
        artifact_key: str,
        prompt: str = "",
        user_id: Optional[str] = None,
        content_type: str = "image/png",
        original_artifact_key: Optional[str] = None,
    ) -> Dict:
        """写入任务的来源记录；同一任务再次写入时返回第一行。"""
        session = self.db.get_session()
        try:
            item = GeneratedImage(
                id=str(uuid.uuid4()),
                job_id=job_id,
                artifact_key=artifact_key,
                original_artifact_key=original_artifact_key,
                content_type=content_type,
                prompt=(prompt or "")[:4000],
                user_id=user_id or None,
                created_at=datetime.now(),
            )
            session.add(item)
            session.commit()
            return artifact_to_dict(item)
        except IntegrityError:
            session.rollback()
            existing = session.query(GeneratedImage).filter(GeneratedImage.job_id == job_id).first()
            if existing is None:
                raise
            return artifact_to_dict(existing)
        finally:
            session.close()

    def claim_artifact(self, image_id: str, user_id: str) -> Dict:
        session = self.db.get_session()
        try:
            updated = (
                session.query(GeneratedImage)
                .filter(GeneratedImage.id == image_id, GeneratedImage.user_id.is_(None))
                .update({GeneratedImage.user_id: user_id}, synchronize_session=False)
            )
            session.commit()
            item = session.get(GeneratedImage, image_id)
            if item is None:
                raise NotFound("image not found")
            if item.user_id != user_id:
                raise AlreadyProcessed("image already claimed")
            if updated:
                log_event(logger, E.GENERATION_CLAIM, image_id=image_id, user_id=user_id)
            return artifact_to_dict(item)
        finally:
            session.close()

    def list_artifacts(self, user_id: Optional[str], limit: int = 50) -> List[Dict]:
        session = self.db.get_session()
        try:
            query = session.query(GeneratedImage)
            if user_id:
                query = query.filter(GeneratedImage.user_id == user_id)
            else:
                query = query.filter(GeneratedImage.user_id.is_(None))
            rows = query.order_by(GeneratedImage.created_at.desc()).limit(max(1, min(int(limit or 50), 50))).all()
            return [artifact_to_dict(x) for x in rows]
        finally:
            session.close()
