"""
Order lifecycle and settlement.

    PENDING -> ACCEPTED -> IN_PROGRESS -> COMPLETED
    PENDING -> CANCELLED

Every transition is a conditional update on the stored status, so of two
racing callers exactly one wins and the other gets InvalidTransition.

Completion writes the new status together with a settlement record in the
same single-document update. The settlement is then applied to the worker's
balance by apply_settlement, which is idempotent: the credit and the
"already credited for this order" marker live in one guarded update on the
worker document. reconcile_settlements picks up anything a crash left
unapplied, and drops markers of settlements applied more than
SETTLEMENT_MARKER_TTL_DAYS ago.
"""
import logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple

from auth import is_admin, user_summary
from config import COMMISSION_RATE, MAX_ORDER_PRICE, SETTLEMENT_MARKER_TTL_DAYS
from errors import ConflictError, ForbiddenError, InvalidTransition, NotFoundError, ValidationError
from notifications import NotificationService
from schemas import Order as OrderSchema, OrderCreate, OrderStatus, OrderUpdate, Review, ReviewCreate, Settlement
from store import Store, utcnow

logger = logging.getLogger(__name__)

# target status -> the only status it may be reached from
PRIOR_STATUS = {
    "ACCEPTED": "PENDING",
    "IN_PROGRESS": "ACCEPTED",
    "COMPLETED": "IN_PROGRESS",
    "CANCELLED": "PENDING",
}

TIMESTAMP_FIELD = {
    "ACCEPTED": "acceptedAt",
    "IN_PROGRESS": "startedAt",
    "COMPLETED": "completedAt",
    "CANCELLED": "cancelledAt",
}

EDITABLE_FIELDS = ("title", "description", "category", "location", "lat", "lng")


def settlement_amount(price) -> Tuple[int, int]:
    """Split a price into (worker payout, platform commission) in whole units."""
    if price is None or price <= 0 or price > MAX_ORDER_PRICE:
        raise ValidationError(f"Order price must be between 0 and {MAX_ORDER_PRICE:,}")
    gross = Decimal(str(price))
    payout = (gross * (Decimal(1) - Decimal(str(COMMISSION_RATE)))).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    commission = (gross - payout).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(payout), int(commission)


class OrderService:
    def __init__(self, store: Store, notifications: NotificationService):
        self.store = store
        self.notifications = notifications

    def get_order(self, order_id: str) -> dict:
        order = self.store.get("order", order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def with_people(self, order: dict) -> dict:
        """Order plus name/avatar summaries of its customer and worker."""
        view = dict(order)
        view["customer"] = user_summary(self.store.get("user", order["customerId"]))
        view["worker"] = user_summary(self.store.get("user", order["workerId"])) if order.get("workerId") else None
        return view

    def list_orders(self, status: Optional[OrderStatus] = None, customer_id: Optional[str] = None,
                    worker_id: Optional[str] = None) -> List[dict]:
        q = {}
        if status:
            q["status"] = status
        if customer_id:
            q["customerId"] = customer_id
        if worker_id:
            q["workerId"] = worker_id
        return self.store.find("order", q, sort=[("createdAt", -1)])

    def create_order(self, customer: dict, body: OrderCreate) -> dict:
        if customer["role"] not in ("CUSTOMER", "ADMIN"):
            raise ForbiddenError("Only customers can create orders")
        order = OrderSchema(customer_id=customer["id"], **body.model_dump())
        doc = self.store.insert("order", order.doc())
        logger.info(f"Order {doc['id']} created by {customer['id']} for {doc['price']}")

        workers = self.store.find("user", {"role": "WORKER", "skills": doc["category"], "isBanned": {"$ne": True}})
        for worker in workers:
            self.notifications.create(worker["id"], "ORDER", "New job nearby", f"{doc['title']} - {doc['price']:,.0f}", doc["id"])
        return doc

    def _transition(self, order: dict, target: OrderStatus, fields: Optional[dict] = None,
                    expected: Optional[dict] = None) -> dict:
        prior = PRIOR_STATUS[target]
        changes = {"status": target, TIMESTAMP_FIELD[target]: utcnow(), **(fields or {})}
        updated = self.store.update("order", order["id"], set=changes, expected={"status": prior, **(expected or {})})
        if updated is None:
            current = self.store.get("order", order["id"])
            if current is None:
                raise NotFoundError("Order not found")
            raise InvalidTransition(current["status"], target)
        logger.info(f"Order {order['id']} {prior} -> {target}")
        return updated

    def _require_status(self, order: dict, target: OrderStatus) -> None:
        if order["status"] != PRIOR_STATUS[target]:
            raise InvalidTransition(order["status"], target)

    def accept(self, order_id: str, worker: dict) -> dict:
        order = self.get_order(order_id)
        if worker["role"] != "WORKER":
            raise ForbiddenError("Only workers can accept orders")
        if worker.get("isBanned"):
            raise ForbiddenError("Your account is blocked")
        self._require_status(order, "ACCEPTED")
        updated = self._transition(order, "ACCEPTED", {"workerId": worker["id"]}, {"workerId": None})
        self.notifications.create(order["customerId"], "ORDER", "Order accepted",
                                  f"{worker['name']} accepted \"{order['title']}\"", order_id)
        return updated

    def _require_assigned(self, order: dict, actor: dict) -> None:
        if order.get("workerId") != actor["id"]:
            raise ForbiddenError("Only the assigned worker can do this")

    def start(self, order_id: str, worker: dict) -> dict:
        order = self.get_order(order_id)
        self._require_status(order, "IN_PROGRESS")
        self._require_assigned(order, worker)
        updated = self._transition(order, "IN_PROGRESS", expected={"workerId": worker["id"]})
        self.notifications.create(order["customerId"], "ORDER", "Work started",
                                  f"Work on \"{order['title']}\" has started", order_id)
        return updated

    def complete(self, order_id: str, worker: dict) -> dict:
        order = self.get_order(order_id)
        self._require_status(order, "COMPLETED")
        self._require_assigned(order, worker)
        payout, commission = settlement_amount(order.get("price"))
        settlement = Settlement(worker_id=worker["id"], amount=payout, commission=commission)
        updated = self._transition(order, "COMPLETED", {"settlement": settlement.doc()}, {"workerId": worker["id"]})
        self.notifications.create(order["customerId"], "ORDER", "Order completed",
                                  f"\"{order['title']}\" has been completed", order_id)
        return self.apply_settlement(updated)

    def apply_settlement(self, order: dict) -> dict:
        settlement = order.get("settlement")
        if not settlement or settlement.get("applied"):
            return order
        order_id = order["id"]
        credited = self.store.update(
            "user", settlement["workerId"],
            inc={"balance": settlement["amount"], "completedJobs": 1},
            push={"settledOrders": order_id},
            expected={"settledOrders": {"$ne": order_id}},
        )
        if credited is None and self.store.get("user", settlement["workerId"]) is None:
            logger.error(f"Settlement for order {order_id} skipped: worker {settlement['workerId']} not found")
            return order
        marked = self.store.update("order", order_id, set={"settlement.applied": True, "settlement.appliedAt": utcnow()},
                                   expected={"settlement.applied": False})
        if credited is not None:
            logger.info(f"Settled order {order_id}: {settlement['amount']} to {settlement['workerId']}")
            self.notifications.create(settlement["workerId"], "PAYMENT", "Payment received",
                                      f"{settlement['amount']:,} credited for \"{order['title']}\"", order_id)
        return marked or self.get_order(order_id)

    def reconcile_settlements(self) -> int:
        pending = self.store.find("order", {"status": "COMPLETED", "settlement.applied": False})
        for order in pending:
            self.apply_settlement(order)
        if pending:
            logger.warning(f"Reconciled {len(pending)} unapplied settlement(s)")
        self.prune_settlement_markers()
        return len(pending)

    def prune_settlement_markers(self) -> int:
        """Drop the per-order credit markers of settlements applied long ago from worker documents."""
        cutoff = utcnow() - timedelta(days=SETTLEMENT_MARKER_TTL_DAYS)
        settled = self.store.find("order", {
            "settlement.applied": True,
            "settlement.appliedAt": {"$lt": cutoff},
            "settlement.markerPruned": {"$ne": True},
        })
        for order in settled:
            self.store.update("user", order["settlement"]["workerId"], pull={"settledOrders": order["id"]})
            self.store.update("order", order["id"], set={"settlement.markerPruned": True})
        if settled:
            logger.info(f"Pruned {len(settled)} settlement marker(s)")
        return len(settled)

    def cancel(self, order_id: str, actor: dict) -> dict:
        order = self.get_order(order_id)
        self._require_status(order, "CANCELLED")
        if order["customerId"] != actor["id"] and not is_admin(actor):
            raise ForbiddenError("Only the customer can cancel this order")
        updated = self._transition(order, "CANCELLED")
        if actor["id"] != order["customerId"]:
            self.notifications.create(order["customerId"], "ORDER", "Order cancelled",
                                      f"\"{order['title']}\" was cancelled by an administrator", order_id)
        return updated

    def update_order(self, order_id: str, body: OrderUpdate, actor: dict) -> dict:
        order = self.get_order(order_id)
        changes = body.doc(exclude_unset=True)
        if "price" in changes and changes["price"] != order["price"]:
            raise ValidationError("Price cannot be changed after the order is created")
        status = changes.pop("status", None)
        worker_id = changes.pop("workerId", None)
        changes = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS}
        if status == order["status"]:
            status = None
        if changes and status is not None:
            raise ValidationError("Edit the order and change its status in separate requests")

        if changes:
            if order["customerId"] != actor["id"] and not is_admin(actor):
                raise ForbiddenError("Only the customer can edit this order")
            if self.store.update("order", order_id, set=changes, expected={"status": "PENDING"}) is None:
                raise ConflictError("Only pending orders can be edited")

        if status is not None:
            if status == "ACCEPTED":
                if worker_id and worker_id != actor["id"]:
                    raise ForbiddenError("Orders can only be accepted for yourself")
                return self.accept(order_id, actor)
            if status == "IN_PROGRESS":
                return self.start(order_id, actor)
            if status == "COMPLETED":
                return self.complete(order_id, actor)
            if status == "CANCELLED":
                return self.cancel(order_id, actor)
            raise InvalidTransition(order["status"], status)
        return self.get_order(order_id)

    def submit_review(self, order_id: str, customer: dict, body: ReviewCreate) -> dict:
        order = self.get_order(order_id)
        if order["customerId"] != customer["id"]:
            raise ForbiddenError("Only the customer can review this order")
        if order["status"] != "COMPLETED":
            raise ConflictError("Only completed orders can be reviewed")
        review = Review(rating=body.rating, comment=body.comment, created_at=utcnow())
        updated = self.store.update("order", order_id, set={"review": review.doc()},
                                    expected={"status": "COMPLETED", "review": None})
        if updated is None:
            raise ConflictError("Order already reviewed")
        self._rate_worker(order["workerId"], body.rating)
        self.notifications.create(order["workerId"], "ORDER", "New review",
                                  f"You received {body.rating}/5 for \"{order['title']}\"", order_id)
        return updated

    def _rate_worker(self, worker_id: str, rating: int) -> None:
        for _ in range(5):
            worker = self.store.get("user", worker_id)
            if worker is None:
                return
            count = worker.get("ratingCount", 0)
            average = rating if count == 0 else (worker.get("rating", 0) * count + rating) / (count + 1)
            if self.store.update("user", worker_id, set={"rating": round(average, 2), "ratingCount": count + 1},
                                 expected={"ratingCount": count}):
                return
        logger.warning(f"Could not update rating for worker {worker_id} after retries")

    def delete_order(self, order_id: str, actor: dict) -> None:
        order = self.get_order(order_id)
        if not is_admin(actor):
            if order["customerId"] != actor["id"]:
                raise ForbiddenError("Only the customer can delete this order")
            if order["status"] not in ("PENDING", "CANCELLED"):
                raise ConflictError("Only pending or cancelled orders can be deleted")
        self.store.delete("order", order_id)
