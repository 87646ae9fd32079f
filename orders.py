"""
Order Ledger.

Owns the order lifecycle: checkout, payment reconciliation and status
progression. Two guarantees hold regardless of how many times, or how
concurrently, a payment confirmation arrives:

* ``payment.status`` only moves forward (pending -> completed | failed), by a
  conditional update on the current persisted value;
* every order line takes its stock exactly once, through the commit key that
  ``Catalog.decrement_stock`` records on the product.

A confirmation that crashed half way is finished by the next one: the claim on
``payment.status`` is already taken, ``stockCommitted`` is still unset, and the
per-line commit keys skip the lines that already went through.
"""
import secrets
import time
from typing import Dict, Iterable, List, Optional, Set, Tuple

import structlog
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import Actor
from catalog import Catalog, effective_price
from config import ORDER_NUMBER_ATTEMPTS
from database import ORDERS, PRODUCTS, create_document, get_documents, parse_id, serialize, utcnow
from errors import (
    Conflict,
    Forbidden,
    InsufficientStock,
    InternalError,
    InvalidTransition,
    NotFound,
    UpstreamError,
    ValidationFailed,
)
from payments import PaystackGateway
from schemas import PRICE_TOLERANCE, OrderCreate, OrderStatus, PaymentMethod, PaymentStatus, Role

log = structlog.get_logger(__name__)

ORDER_NUMBER_PREFIX = "ORD"

TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.pending: {OrderStatus.processing, OrderStatus.cancelled},
    OrderStatus.processing: {OrderStatus.shipped, OrderStatus.cancelled},
    OrderStatus.shipped: {OrderStatus.delivered, OrderStatus.cancelled},
    OrderStatus.delivered: set(),
    OrderStatus.cancelled: set(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS.get(OrderStatus(current), set())


def allowed_sources(target: OrderStatus) -> List[str]:
    """Statuses from which ``target`` may be reached."""
    return [source.value for source, targets in TRANSITIONS.items() if target in targets]


def generate_order_number() -> str:
    # Unlikely to collide, not guaranteed: the unique index has the last word
    return f"{ORDER_NUMBER_PREFIX}-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


def commit_key(order_id, product_id) -> str:
    return f"{order_id}:{product_id}"


def public_order(order: dict) -> dict:
    return serialize(order)


class OrderLedger:
    def __init__(self, db, gateway: Optional[PaystackGateway] = None, catalog: Optional[Catalog] = None):
        self.db = db
        self.gateway = gateway
        self.catalog = catalog or Catalog(db)

    # Checkout

    async def create_order(self, actor: Actor, body: OrderCreate) -> Tuple[dict, Optional[str]]:
        """Place an order; returns the stored order and, for gateway payments, the redirect URL."""
        lines, items_price = await self._price_lines(body)
        if abs(items_price - body.itemsPrice) > PRICE_TOLERANCE:
            raise ValidationFailed(
                "itemsPrice does not match current catalog prices",
                {"itemsPrice": body.itemsPrice, "expected": items_price},
            )
        total = round(items_price + body.shippingPrice, 2)
        doc = {
            "user": parse_id(actor.id, "User"),
            "orderItems": lines,
            "shipping": body.shipping.model_dump(),
            "payment": {
                "method": body.payment.method.value,
                "reference": None,
                "status": PaymentStatus.pending.value,
                "amount": total,
                "paidAt": None,
            },
            "itemsPrice": items_price,
            "shippingPrice": round(body.shippingPrice, 2),
            "totalPrice": total,
            "status": OrderStatus.pending.value,
            "deliveredAt": None,
            "cancelledAt": None,
            "stockCommitted": False,
            "reconciliationRequired": False,
            "stockShortfalls": [],
        }
        order_id = await self._insert(doc)
        order = await self._get(order_id)
        log.info(
            "order.created",
            order_id=str(order_id),
            order_number=order["orderNumber"],
            method=body.payment.method.value,
            total=total,
        )

        if body.payment.method == PaymentMethod.cash_on_delivery:
            return await self._commit_on_creation(order), None
        return await self._start_gateway_payment(actor, order)

    async def _price_lines(self, body: OrderCreate) -> Tuple[List[dict], float]:
        """Check every line against the live catalog and snapshot its unit price."""
        lines = []
        items_price = 0.0
        for item in body.orderItems:
            product = await self.db[PRODUCTS].find_one({"_id": parse_id(item.product, "Product")})
            if not product:
                raise NotFound(f"Product not found with id {item.product}")
            if product["stock"] < item.quantity:
                raise InsufficientStock(str(product["_id"]), product["title"], product["stock"])
            price = effective_price(product)
            items_price += price * item.quantity
            lines.append(
                {
                    "product": product["_id"],
                    "outlet": product["outletId"],
                    "title": product["title"],
                    "quantity": item.quantity,
                    "price": price,
                }
            )
        return lines, round(items_price, 2)

    async def _insert(self, doc: dict):
        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            doc["orderNumber"] = generate_order_number()
            try:
                return await create_document(self.db, ORDERS, doc)
            except DuplicateKeyError:
                log.warning("order.number_collision", order_number=doc["orderNumber"], attempt=attempt)
        raise InternalError("Could not allocate an order number")

    async def _commit_on_creation(self, order: dict) -> dict:
        applied, shortfalls = await self._commit_stock(order)
        if shortfalls:
            # Lost a race after the preflight check: undo and refuse the order
            for line in applied:
                await self.catalog.release_stock(line["product"], line["quantity"], commit_key(order["_id"], line["product"]))
            await self.db[ORDERS].delete_one({"_id": order["_id"]})
            self._log_shortfalls(order, shortfalls)
            first = shortfalls[0]
            raise InsufficientStock(str(first["product"]), first["title"], first["available"])
        return await self._set(order["_id"], {"stockCommitted": True})

    async def _start_gateway_payment(self, actor: Actor, order: dict) -> Tuple[dict, str]:
        if self.gateway is None:
            raise InternalError("No payment gateway configured")
        try:
            tx = await self.gateway.initialize(
                email=actor.email,
                amount=order["totalPrice"],
                metadata={
                    "order_id": str(order["_id"]),
                    "custom_fields": [
                        {"display_name": "Order Number", "variable_name": "order_number", "value": order["orderNumber"]}
                    ],
                },
            )
        except UpstreamError as e:
            log.error("payment.initialize_failed", order_id=str(order["_id"]), order_number=order["orderNumber"])
            # The order stays on record, unpaid
            raise UpstreamError(
                "Payment initialization failed",
                {
                    "order": {"id": str(order["_id"]), "orderNumber": order["orderNumber"]},
                    "upstream": e.details,
                },
            )
        order = await self._set(order["_id"], {"payment.reference": tx.reference})
        log.info("payment.initialized", order_id=str(order["_id"]), reference=tx.reference)
        return order, tx.authorization_url

    # Payment reconciliation

    async def confirm_payment(self, reference: str, succeeded: bool) -> dict:
        """Apply the provider's verdict on ``reference``. Safe to call any number of times."""
        order = await self.db[ORDERS].find_one({"payment.reference": reference})
        if not order:
            raise NotFound("Order not found with this payment reference")

        now = utcnow()
        if not succeeded:
            failed = await self.db[ORDERS].find_one_and_update(
                {"_id": order["_id"], "payment.status": PaymentStatus.pending.value},
                {"$set": {"payment.status": PaymentStatus.failed.value, "updatedAt": now}},
                return_document=ReturnDocument.AFTER,
            )
            if failed is None:
                return await self._get(order["_id"])
            log.info("payment.failed", order_id=str(order["_id"]), reference=reference)
            return failed

        claimed = await self.db[ORDERS].find_one_and_update(
            {"_id": order["_id"], "payment.status": PaymentStatus.pending.value},
            {"$set": {"payment.status": PaymentStatus.completed.value, "payment.paidAt": now, "updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is not None:
            log.info("payment.confirmed", order_id=str(order["_id"]), reference=reference)
            return await self._settle_stock(claimed)

        current = await self._get(order["_id"])
        if current["payment"]["status"] == PaymentStatus.failed.value:
            log.error(
                "payment.success_after_failure",
                order_id=str(current["_id"]),
                order_number=current["orderNumber"],
                reference=reference,
            )
            if not current.get("reconciliationRequired"):
                current = await self._set(current["_id"], {"reconciliationRequired": True})
            return current
        return await self._settle_stock(current)

    async def _settle_stock(self, order: dict) -> dict:
        if order.get("stockCommitted"):
            return order
        if order["status"] == OrderStatus.cancelled.value:
            log.error(
                "payment.completed_for_cancelled_order",
                order_id=str(order["_id"]),
                order_number=order["orderNumber"],
            )
            return await self._set(order["_id"], {"reconciliationRequired": True})

        _, shortfalls = await self._commit_stock(order)
        changes = {"stockCommitted": True}
        if shortfalls:
            self._log_shortfalls(order, shortfalls)
            changes.update(reconciliationRequired=True, stockShortfalls=shortfalls)
        settled = await self._set(order["_id"], changes)

        if settled["status"] == OrderStatus.cancelled.value:
            # cancelled while we were committing; give the stock back
            await self._release_stock(settled)
        elif settled["status"] == OrderStatus.delivered.value:
            await self._retire_commit_keys(settled)
        return settled

    async def _commit_stock(self, order: dict) -> Tuple[List[dict], List[dict]]:
        applied, shortfalls = [], []
        for line in order["orderItems"]:
            result = await self.catalog.decrement_stock(
                line["product"], line["quantity"], commit_key(order["_id"], line["product"])
            )
            if result.ok:
                applied.append(line)
            else:
                shortfalls.append(
                    {
                        "product": line["product"],
                        "title": line["title"],
                        "requested": line["quantity"],
                        "available": result.available,
                        "reason": result.outcome.value,
                    }
                )
        return applied, shortfalls

    async def _release_stock(self, order: dict) -> None:
        for line in order["orderItems"]:
            released = await self.catalog.release_stock(
                line["product"], line["quantity"], commit_key(order["_id"], line["product"])
            )
            if released:
                log.info("stock.released", order_id=str(order["_id"]), product_id=str(line["product"]), quantity=line["quantity"])

    async def _retire_commit_keys(self, order: dict) -> None:
        # Delivered is terminal: nothing will release this stock again, and
        # stockCommitted stops any replay before it reaches the products
        for line in order["orderItems"]:
            await self.catalog.retire_commit(line["product"], commit_key(order["_id"], line["product"]))

    @staticmethod
    def _log_shortfalls(order: dict, shortfalls: Iterable[dict]) -> None:
        for s in shortfalls:
            log.error(
                "stock.reconciliation_failed",
                order_id=str(order["_id"]),
                order_number=order["orderNumber"],
                product_id=str(s["product"]),
                requested=s["requested"],
                available=s["available"],
                reason=s["reason"],
            )

    async def verify_payment(self, reference: str) -> dict:
        """Ask the provider how ``reference`` ended and reconcile the order with it."""
        order = await self.db[ORDERS].find_one({"payment.reference": reference})
        if not order:
            raise NotFound("Order not found with this payment reference")
        status = order["payment"]["status"]
        if status == PaymentStatus.completed.value:
            return await self._settle_stock(order)
        if status == PaymentStatus.failed.value:
            raise ValidationFailed("Payment verification failed", {"status": status})

        if self.gateway is None:
            raise InternalError("No payment gateway configured")
        tx = await self.gateway.verify(reference)
        if tx.succeeded:
            return await self.confirm_payment(reference, True)
        if tx.failed:
            await self.confirm_payment(reference, False)
            raise ValidationFailed("Payment verification failed", tx.data)
        raise ValidationFailed("Payment has not been completed", {"status": tx.status})

    async def handle_webhook_event(self, event: dict) -> Optional[dict]:
        kind = event.get("event")
        reference = (event.get("data") or {}).get("reference")
        if kind == "charge.success" and reference:
            return await self.confirm_payment(reference, True)
        log.info("webhook.ignored", event=kind, reference=reference)
        return None

    # Status progression

    async def update_order_status(self, order_id, new_status: OrderStatus, actor: Actor) -> dict:
        oid = parse_id(order_id, "Order")
        order = await self._get(oid)
        await self._ensure_can_manage(actor, order)

        now = utcnow()
        changes = {"status": new_status.value, "updatedAt": now}
        if new_status == OrderStatus.delivered:
            changes["deliveredAt"] = now
        elif new_status == OrderStatus.cancelled:
            changes["cancelledAt"] = now

        # Checked against the persisted status at write time, not the read above
        updated = await self.db[ORDERS].find_one_and_update(
            {"_id": oid, "status": {"$in": allowed_sources(new_status)}},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            current = await self._get(oid)
            raise InvalidTransition(current["status"], new_status.value)

        log.info(
            "order.status_changed",
            order_id=str(oid),
            from_status=order["status"],
            to_status=new_status.value,
            by=actor.id,
            role=actor.role.value,
        )
        if new_status == OrderStatus.cancelled:
            await self._release_stock(updated)
        elif new_status == OrderStatus.delivered and updated.get("stockCommitted"):
            await self._retire_commit_keys(updated)
        return updated

    async def update_pricing(self, actor: Actor, order_id, shipping_price: float) -> dict:
        """Admin correction of the shipping charge; the total follows it."""
        if not actor.is_admin:
            raise Forbidden("Only admins can edit order pricing")
        oid = parse_id(order_id, "Order")
        order = await self._get(oid)
        if order["payment"]["status"] == PaymentStatus.completed.value or order["payment"].get("reference"):
            raise Conflict("Pricing cannot change once a payment has been started")
        if order["status"] in (OrderStatus.delivered.value, OrderStatus.cancelled.value):
            raise Conflict(f"Pricing cannot change on a {order['status']} order")
        shipping_price = round(shipping_price, 2)
        total = round(order["itemsPrice"] + shipping_price, 2)
        updated = await self.db[ORDERS].find_one_and_update(
            {"_id": oid, "payment.status": {"$ne": PaymentStatus.completed.value}, "payment.reference": None},
            {"$set": {"shippingPrice": shipping_price, "totalPrice": total, "payment.amount": total, "updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise Conflict("Pricing cannot change once a payment has been started")
        log.info("order.pricing_changed", order_id=str(oid), shipping_price=shipping_price, total=total, by=actor.id)
        return updated

    # Reads

    async def get_my_orders(self, actor: Actor) -> List[dict]:
        return await get_documents(self.db, ORDERS, {"user": parse_id(actor.id, "User")}, sort=[("createdAt", -1)])

    async def get_outlet_orders(self, actor: Actor) -> List[dict]:
        outlet = await self.catalog.get_my_outlet(actor)
        return await get_documents(self.db, ORDERS, {"orderItems.outlet": outlet["_id"]}, sort=[("createdAt", -1)])

    async def list_orders(self, status: Optional[OrderStatus] = None, page: int = 1, limit: int = 20) -> dict:
        query = {"status": status.value} if status else {}
        total = await self.db[ORDERS].count_documents(query)
        items = await get_documents(self.db, ORDERS, query, sort=[("createdAt", -1)], skip=(page - 1) * limit, limit=limit)
        return {"count": len(items), "total": total, "page": page, "orders": items}

    async def get_order_by_id(self, actor: Actor, order_id) -> dict:
        order = await self._get(parse_id(order_id, "Order"))
        if not await self.can_read(actor, order):
            raise Forbidden("Not authorized to access this order")
        return order

    async def can_read(self, actor: Actor, order: dict) -> bool:
        if actor.is_admin or str(order["user"]) == actor.id:
            return True
        return await self._owns_a_line(actor, order)

    async def _ensure_can_manage(self, actor: Actor, order: dict) -> None:
        if actor.is_admin:
            return
        if actor.role == Role.outlet and await self._owns_a_line(actor, order):
            return
        raise Forbidden("Not authorized to update this order")

    async def _owns_a_line(self, actor: Actor, order: dict) -> bool:
        outlet = await self.catalog.owned_outlet(actor)
        if not outlet:
            return False
        return any(line.get("outlet") == outlet["_id"] for line in order["orderItems"])

    async def _get(self, order_id) -> dict:
        order = await self.db[ORDERS].find_one({"_id": order_id})
        if not order:
            raise NotFound("Order not found")
        return order

    async def _set(self, order_id, changes: dict) -> dict:
        changes = dict(changes, updatedAt=utcnow())
        return await self.db[ORDERS].find_one_and_update(
            {"_id": order_id}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
