"""
Catalog store: outlets, products and reviews.

Apart from owner edits, product stock changes from the order path through
``decrement_stock`` / ``release_stock``, and by approved restock requests
through ``add_stock``. The order-path mutators are single conditional updates
on the product document. Each one records (or removes) the commit key of the
order line it applies, so a replay of the same line is a no-op. Keys are
retired once their order is delivered.
"""
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import Actor
from database import OUTLETS, PRODUCTS, RESTOCKS, USERS, create_document, get_documents, parse_id, serialize, utcnow
from errors import Conflict, DuplicateEntry, Forbidden, NotFound
from schemas import (
    OutletBody,
    OutletUpdate,
    ProductBody,
    ProductUpdate,
    RestockDecision,
    RestockRequestBody,
    RestockStatus,
    ReviewBody,
    Role,
)

log = structlog.get_logger(__name__)

# Product fields that never leave the service
PRIVATE_PRODUCT_FIELDS = ("appliedOrders",)


class StockOutcome(str, Enum):
    applied = "applied"
    already_applied = "already_applied"
    insufficient = "insufficient"
    missing = "missing"


@dataclass
class StockResult:
    outcome: StockOutcome
    available: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome in (StockOutcome.applied, StockOutcome.already_applied)


def public_product(doc: dict) -> dict:
    doc = {k: v for k, v in doc.items() if k not in PRIVATE_PRODUCT_FIELDS}
    return serialize(doc)


def effective_price(product: dict) -> float:
    """Price a customer pays right now: the discount when it undercuts the list price."""
    discount = product.get("discountPrice")
    if discount is not None and discount < product["price"]:
        return float(discount)
    return float(product["price"])


def average_rating(reviews: list) -> float:
    if not reviews:
        return 0
    return sum(r["rating"] for r in reviews) / len(reviews)


class Catalog:
    def __init__(self, db):
        self.db = db

    # Stock

    async def decrement_stock(self, product_id, quantity: int, commit_key: str) -> StockResult:
        """Take ``quantity`` units off a product, once per ``commit_key``.

        The filter only matches while stock covers the request and the key has
        not been applied, so concurrent callers can never drive stock negative
        or apply the same order line twice.
        """
        pid = parse_id(product_id, "Product")
        updated = await self.db[PRODUCTS].find_one_and_update(
            {"_id": pid, "stock": {"$gte": quantity}, "appliedOrders": {"$ne": commit_key}},
            {"$inc": {"stock": -quantity}, "$push": {"appliedOrders": commit_key}, "$set": {"updatedAt": utcnow()}},
            projection={"stock": 1},
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            return StockResult(StockOutcome.applied, updated["stock"])

        current = await self.db[PRODUCTS].find_one({"_id": pid}, {"stock": 1, "appliedOrders": 1})
        if current is None:
            return StockResult(StockOutcome.missing)
        if commit_key in current.get("appliedOrders", []):
            return StockResult(StockOutcome.already_applied, current["stock"])
        return StockResult(StockOutcome.insufficient, current["stock"])

    async def release_stock(self, product_id, quantity: int, commit_key: str) -> bool:
        """Undo a ``decrement_stock`` for ``commit_key``; false when there was nothing to undo."""
        pid = parse_id(product_id, "Product")
        result = await self.db[PRODUCTS].update_one(
            {"_id": pid, "appliedOrders": commit_key},
            {"$inc": {"stock": quantity}, "$pull": {"appliedOrders": commit_key}, "$set": {"updatedAt": utcnow()}},
        )
        return result.modified_count == 1

    async def retire_commit(self, product_id, commit_key: str) -> None:
        """Forget a commit key whose stock can no longer be released."""
        await self.db[PRODUCTS].update_one(
            {"_id": parse_id(product_id, "Product")}, {"$pull": {"appliedOrders": commit_key}}
        )

    async def add_stock(self, product_id, quantity: int) -> Optional[dict]:
        return await self.db[PRODUCTS].find_one_and_update(
            {"_id": parse_id(product_id, "Product")},
            {"$inc": {"stock": quantity}, "$set": {"updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    # Products

    async def get_product(self, product_id) -> dict:
        product = await self.db[PRODUCTS].find_one({"_id": parse_id(product_id, "Product")})
        if not product:
            raise NotFound(f"Product not found with id {product_id}")
        return product

    async def list_products(
        self,
        category: Optional[str] = None,
        q: Optional[str] = None,
        featured: Optional[bool] = None,
        outlet: Optional[str] = None,
        page: int = 1,
        limit: int = 12,
    ) -> dict:
        query = {}
        if category:
            query["category"] = category
        if q:
            pattern = re.escape(q)
            query["$or"] = [
                {"title": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        if featured is not None:
            query["featured"] = featured
        if outlet:
            query["outletId"] = parse_id(outlet, "Outlet")
        total = await self.db[PRODUCTS].count_documents(query)
        items = await get_documents(
            self.db, PRODUCTS, query, sort=[("createdAt", -1)], skip=(page - 1) * limit, limit=limit
        )
        return {
            "count": len(items),
            "total": total,
            "page": page,
            "pages": math.ceil(total / limit) if limit else 1,
            "products": [public_product(p) for p in items],
        }

    async def create_product(self, actor: Actor, body: ProductBody) -> dict:
        outlet = await self.db[OUTLETS].find_one({"ownerId": parse_id(actor.id, "User")})
        if not outlet:
            raise NotFound("You must register an outlet before adding products")
        doc = body.model_dump(mode="json")
        doc.update(
            outletId=outlet["_id"],
            rating=0,
            numReviews=0,
            reviews=[],
            appliedOrders=[],
        )
        product_id = await create_document(self.db, PRODUCTS, doc)
        await self.db[OUTLETS].update_one({"_id": outlet["_id"]}, {"$addToSet": {"products": product_id}})
        log.info("product.created", product_id=str(product_id), outlet_id=str(outlet["_id"]))
        return await self.get_product(product_id)

    async def my_products(self, actor: Actor) -> list:
        outlet = await self.get_my_outlet(actor)
        return await get_documents(self.db, PRODUCTS, {"outletId": outlet["_id"]}, sort=[("createdAt", -1)])

    async def update_product(self, actor: Actor, product_id, body: ProductUpdate) -> dict:
        product = await self.get_product(product_id)
        await self._ensure_product_owner(actor, product, "update")
        changes = body.model_dump(mode="json", exclude_unset=True)
        if not changes:
            return product
        changes["updatedAt"] = utcnow()
        return await self.db[PRODUCTS].find_one_and_update(
            {"_id": product["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )

    async def delete_product(self, actor: Actor, product_id) -> None:
        product = await self.get_product(product_id)
        await self._ensure_product_owner(actor, product, "delete")
        await self.db[PRODUCTS].delete_one({"_id": product["_id"]})
        await self.db[OUTLETS].update_one({"_id": product["outletId"]}, {"$pull": {"products": product["_id"]}})
        log.info("product.deleted", product_id=str(product["_id"]), by=actor.id)

    async def add_review(self, actor: Actor, product_id, body: ReviewBody) -> dict:
        pid = parse_id(product_id, "Product")
        review = {
            "userId": parse_id(actor.id, "User"),
            "name": actor.name,
            "rating": body.rating,
            "comment": body.comment,
            "date": utcnow(),
        }
        updated = await self.db[PRODUCTS].find_one_and_update(
            {"_id": pid, "reviews.userId": {"$ne": review["userId"]}},
            {"$push": {"reviews": review}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            await self.get_product(pid)
            raise DuplicateEntry("You have already reviewed this product")
        return await self.recompute_rating(pid)

    async def recompute_rating(self, product_id) -> dict:
        product = await self.get_product(product_id)
        reviews = product.get("reviews", [])
        return await self.db[PRODUCTS].find_one_and_update(
            {"_id": product["_id"]},
            {"$set": {"rating": average_rating(reviews), "numReviews": len(reviews)}},
            return_document=ReturnDocument.AFTER,
        )

    async def _ensure_product_owner(self, actor: Actor, product: dict, action: str) -> None:
        if actor.is_admin:
            return
        outlet = await self.db[OUTLETS].find_one({"ownerId": parse_id(actor.id, "User")}, {"_id": 1})
        if not outlet or outlet["_id"] != product["outletId"]:
            raise Forbidden(f"Not authorized to {action} this product")

    # Outlets

    async def create_outlet(self, actor: Actor, body: OutletBody) -> dict:
        owner_id = parse_id(actor.id, "User")
        if await self.db[OUTLETS].find_one({"ownerId": owner_id}, {"_id": 1}):
            raise DuplicateEntry("You already have an outlet registered")
        doc = body.model_dump(mode="json")
        doc.update(ownerId=owner_id, isVerified=False, rating=None, products=[])
        try:
            outlet_id = await create_document(self.db, OUTLETS, doc)
        except DuplicateKeyError:
            raise DuplicateEntry("You already have an outlet registered")
        log.info("outlet.created", outlet_id=str(outlet_id), owner_id=actor.id)
        return await self.get_outlet(outlet_id)

    async def get_outlet(self, outlet_id) -> dict:
        outlet = await self.db[OUTLETS].find_one({"_id": parse_id(outlet_id, "Outlet")})
        if not outlet:
            raise NotFound("Outlet not found")
        return outlet

    async def get_my_outlet(self, actor: Actor) -> dict:
        outlet = await self.owned_outlet(actor)
        if not outlet:
            raise NotFound("You have no registered outlet")
        return outlet

    async def owned_outlet(self, actor: Actor) -> Optional[dict]:
        if actor.role != Role.outlet:
            return None
        return await self.db[OUTLETS].find_one({"ownerId": parse_id(actor.id, "User")})

    async def list_outlets(self, verified: Optional[bool] = None, page: int = 1, limit: int = 10) -> dict:
        query = {} if verified is None else {"isVerified": verified}
        total = await self.db[OUTLETS].count_documents(query)
        items = await get_documents(
            self.db, OUTLETS, query, sort=[("createdAt", -1)], skip=(page - 1) * limit, limit=limit
        )
        pagination = {}
        if page * limit < total:
            pagination["next"] = {"page": page + 1, "limit": limit}
        if page > 1:
            pagination["prev"] = {"page": page - 1, "limit": limit}
        return {"count": len(items), "total": total, "pagination": pagination, "outlets": items}

    async def update_outlet(self, actor: Actor, outlet_id, body: OutletUpdate) -> dict:
        outlet = await self.get_outlet(outlet_id)
        self._ensure_outlet_owner(actor, outlet, "update")
        changes = body.model_dump(mode="json", exclude_unset=True)
        if not changes:
            return outlet
        changes["updatedAt"] = utcnow()
        return await self.db[OUTLETS].find_one_and_update(
            {"_id": outlet["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )

    async def delete_outlet(self, actor: Actor, outlet_id) -> int:
        """Delete an outlet and every product it owns.

        This is two writes, not one transaction: multi-document transactions
        need a replica set, and the service also runs against a standalone
        mongod. Products go first, so an interrupted delete leaves the outlet
        in place (still visible, possibly with no products) and repeating the
        call finishes the job.
        """
        outlet = await self.get_outlet(outlet_id)
        self._ensure_outlet_owner(actor, outlet, "delete")
        removed = await self.db[PRODUCTS].delete_many({"outletId": outlet["_id"]})
        await self.db[OUTLETS].delete_one({"_id": outlet["_id"]})
        log.info(
            "outlet.deleted", outlet_id=str(outlet["_id"]), by=actor.id, products_removed=removed.deleted_count
        )
        return removed.deleted_count

    async def verify_outlet(self, outlet_id) -> dict:
        outlet = await self.db[OUTLETS].find_one_and_update(
            {"_id": parse_id(outlet_id, "Outlet")},
            {"$set": {"isVerified": True, "updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not outlet:
            raise NotFound("Outlet not found")
        log.info("outlet.verified", outlet_id=str(outlet["_id"]))
        return outlet

    async def outlet_products(self, outlet_id) -> list:
        outlet = await self.get_outlet(outlet_id)
        return await get_documents(self.db, PRODUCTS, {"outletId": outlet["_id"]}, sort=[("createdAt", -1)])

    @staticmethod
    def _ensure_outlet_owner(actor: Actor, outlet: dict, action: str) -> None:
        if actor.is_admin or str(outlet["ownerId"]) == actor.id:
            return
        raise Forbidden(f"Not authorized to {action} this outlet")

    async def pending_outlets(self) -> list:
        """Outlets awaiting verification, oldest first, each with its owner's name and email."""
        outlets = await get_documents(self.db, OUTLETS, {"isVerified": False}, sort=[("createdAt", 1)])
        owner_ids = list({o["ownerId"] for o in outlets})
        owners = await get_documents(self.db, USERS, {"_id": {"$in": owner_ids}}, projection={"name": 1, "email": 1})
        by_id = {u["_id"]: u for u in owners}
        for outlet in outlets:
            outlet["owner"] = by_id.get(outlet["ownerId"])
        return outlets

    # Restocking

    async def request_restock(self, actor: Actor, body: RestockRequestBody) -> dict:
        product = await self.get_product(body.product)
        await self._ensure_product_owner(actor, product, "restock")
        doc = {
            "product": product["_id"],
            "outlet": product["outletId"],
            "requestedBy": parse_id(actor.id, "User"),
            "requestedQuantity": body.requestedQuantity,
            "currentQuantity": product["stock"],
            "reason": body.reason,
            "status": RestockStatus.pending.value,
            "adminNote": "",
            "processedAt": None,
            "processedBy": None,
        }
        request_id = await create_document(self.db, RESTOCKS, doc)
        log.info(
            "restock.requested",
            request_id=str(request_id),
            product_id=str(product["_id"]),
            quantity=body.requestedQuantity,
        )
        return await self._get_restock(request_id)

    async def my_restock_requests(self, actor: Actor) -> list:
        outlet = await self.get_my_outlet(actor)
        return await get_documents(self.db, RESTOCKS, {"outlet": outlet["_id"]}, sort=[("createdAt", -1)])

    async def list_restock_requests(self, status: Optional[RestockStatus] = None) -> list:
        query = {"status": status.value} if status else {}
        return await get_documents(self.db, RESTOCKS, query, sort=[("createdAt", -1)])

    async def process_restock(self, actor: Actor, request_id, decision: RestockDecision) -> dict:
        """Approve or reject a pending restock request.

        Approval adds the requested quantity to the product's stock. The
        pending -> decided claim is a conditional update, so a request is
        applied at most once even when two admins act on it together.
        """
        rid = parse_id(request_id, "Restock request")
        request = await self._get_restock(rid)
        if request["status"] != RestockStatus.pending.value:
            raise Conflict("This request has already been processed")
        approved = decision.status == RestockStatus.approved
        if approved:
            await self.get_product(request["product"])

        now = utcnow()
        claimed = await self.db[RESTOCKS].find_one_and_update(
            {"_id": rid, "status": RestockStatus.pending.value},
            {
                "$set": {
                    "status": decision.status.value,
                    "adminNote": decision.adminNote,
                    "processedAt": now,
                    "processedBy": parse_id(actor.id, "User"),
                    "updatedAt": now,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            raise Conflict("This request has already been processed")

        if not approved:
            log.info("restock.rejected", request_id=str(rid), by=actor.id)
            return claimed
        product = await self.add_stock(claimed["product"], claimed["requestedQuantity"])
        if product is None:
            # deleted between the check and the claim
            log.error("restock.product_missing", request_id=str(rid), product_id=str(claimed["product"]))
        else:
            log.info(
                "restock.approved",
                request_id=str(rid),
                product_id=str(product["_id"]),
                quantity=claimed["requestedQuantity"],
                stock=product["stock"],
                by=actor.id,
            )
        return claimed

    async def _get_restock(self, request_id) -> dict:
        request = await self.db[RESTOCKS].find_one({"_id": request_id})
        if not request:
            raise NotFound("Restock request not found")
        return request

    # Admin dashboard

    async def dashboard_stats(self) -> dict:
        counts = {
            "users": await self.db[USERS].count_documents({}),
            "outlets": await self.db[OUTLETS].count_documents({}),
            "products": await self.db[PRODUCTS].count_documents({}),
            "pendingOutlets": await self.db[OUTLETS].count_documents({"isVerified": False}),
        }
        recent_users = await get_documents(
            self.db,
            USERS,
            {},
            projection={"name": 1, "email": 1, "role": 1, "createdAt": 1},
            sort=[("createdAt", -1)],
            limit=5,
        )
        recent_outlets = await get_documents(
            self.db,
            OUTLETS,
            {},
            projection={"name": 1, "location": 1, "isVerified": 1, "createdAt": 1},
            sort=[("createdAt", -1)],
            limit=5,
        )
        return {
            "counts": counts,
            "usersByRole": await self._count_by(USERS, "role"),
            "productsByCategory": await self._count_by(PRODUCTS, "category"),
            "recentUsers": recent_users,
            "recentOutlets": recent_outlets,
        }

    async def _count_by(self, collection: str, field: str) -> list:
        cursor = await self.db[collection].aggregate(
            [{"$group": {"_id": f"${field}", "count": {"$sum": 1}}}, {"$sort": {"count": -1, "_id": 1}}]
        )
        return [{field: row["_id"], "count": row["count"]} for row in await cursor.to_list(length=None)]
