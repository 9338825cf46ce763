"""Store and review repository.

Every read path goes through `_populate`, so a store always comes back with
its author and reviews, and every review with its author. Slugs are derived
here on every write that touches the name.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError
from slugify import slugify

from database import serialize, to_object_id, utcnow
from errors import ConflictError, NotFoundError, PermissionDeniedError
from schemas import ReviewInput, StoreInput, parse

logger = logging.getLogger("uvicorn.error")

PAGE_SIZE = 4
TOP_STORES_LIMIT = 10
SEARCH_LIMIT = 5
NEAR_LIMIT = 10
NEAR_MAX_DISTANCE = 10000  # metres
NEAR_FIELDS = {"slug": 1, "name": 1, "description": 1, "location": 1, "photo": 1}

# Used when a name has nothing that transliterates, e.g. only punctuation
FALLBACK_SLUG = "store"

# Never exposed when a user is embedded as an author
PRIVATE_USER_FIELDS = ("password_hash", "reset_password_token", "reset_password_expires")


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in user.items() if k not in PRIVATE_USER_FIELDS}


@dataclass
class StorePage:
    stores: List[Dict[str, Any]]
    page: int
    pages: int
    count: int

    @property
    def out_of_range(self) -> bool:
        """True when the page is past the last one and the caller should redirect to `pages`."""
        return not self.stores and self.page > 1 and self.count > 0


def _oid(value: Any, what: str = "store"):
    try:
        return to_object_id(value)
    except ValueError:
        raise NotFoundError(f"No {what} found")


class StoreRepository:
    def __init__(self, database, clock: Callable[[], datetime] = utcnow):
        self.stores = database["store"]
        self.reviews = database["review"]
        self.users = database["user"]
        self.clock = clock

    # Population

    def _authors(self, ids) -> Dict[Any, Dict[str, Any]]:
        ids = list({i for i in ids if i is not None})
        if not ids:
            return {}
        return {u["_id"]: public_user(u) for u in self.users.find({"_id": {"$in": ids}})}

    def _populate_reviews(self, reviews: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        authors = self._authors(r.get("author") for r in reviews)
        for r in reviews:
            r["author"] = authors.get(r.get("author"), r.get("author"))
        return reviews

    def _populate(self, stores: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not stores:
            return []
        ids = [s["_id"] for s in stores]
        reviews = list(self.reviews.find({"store": {"$in": ids}}).sort("created", DESCENDING))
        self._populate_reviews(reviews)
        by_store: Dict[Any, List[Dict[str, Any]]] = {i: [] for i in ids}
        for r in reviews:
            by_store[r["store"]].append(r)
        authors = self._authors(s.get("author") for s in stores)
        for s in stores:
            s["reviews"] = by_store[s["_id"]]
            s["author"] = authors.get(s.get("author"), s.get("author"))
        return [serialize(s) for s in stores]

    def _populate_one(self, store: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not store:
            raise NotFoundError("No store found")
        return self._populate([store])[0]

    # Slugs

    def _unique_slug(self, name: str, exclude_id=None) -> str:
        base = slugify(name) or FALLBACK_SLUG
        others: Dict[str, Any] = {"_id": {"$ne": exclude_id}} if exclude_id is not None else {}
        q = {"slug": {"$regex": f"^({re.escape(base)})((-[0-9]*$)?)$", "$options": "i"}, **others}
        taken = self.stores.count_documents(q)
        if not taken:
            return base
        # a rename can free a lower suffix while a higher one is still in use
        n = taken + 1
        while self.stores.find_one({"slug": f"{base}-{n}", **others}, {"_id": 1}):
            n += 1
        return f"{base}-{n}"

    # Stores

    def create_store(self, data: Dict[str, Any], author_id: Any) -> Dict[str, Any]:
        payload = parse(StoreInput, data)
        doc = payload.model_dump(exclude={"author"})
        doc["slug"] = self._unique_slug(payload.name)
        doc["author"] = to_object_id(author_id)
        doc["created"] = self.clock()
        try:
            res = self.stores.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError("Another store just took that name, please try again")
        logger.info("Store created: %s (%s)", doc["slug"], res.inserted_id)
        return self.get_store(res.inserted_id)

    @staticmethod
    def confirm_owner(store: Dict[str, Any], user_id: Any) -> None:
        author = store.get("author")
        if isinstance(author, dict):
            author = author.get("_id", author.get("id"))
        if str(author) != str(user_id):
            logger.warning("User %s tried to edit store %s they do not own", user_id, store.get("_id", store.get("id")))
            raise PermissionDeniedError("You must own a store in order to edit it!")

    def edit_store(self, store_id: Any, editor_id: Any) -> Dict[str, Any]:
        store = self.stores.find_one({"_id": _oid(store_id)})
        if not store:
            raise NotFoundError("No store found")
        self.confirm_owner(store, editor_id)
        return self._populate_one(store)

    def update_store(self, store_id: Any, data: Dict[str, Any], editor_id: Any) -> Dict[str, Any]:
        oid = _oid(store_id)
        current = self.stores.find_one({"_id": oid})
        if not current:
            raise NotFoundError("No store found")
        self.confirm_owner(current, editor_id)
        if data.get("author") is not None and str(data["author"]) != str(current["author"]):
            raise PermissionDeniedError("You cannot reassign the author of a store")

        payload = parse(StoreInput, data)
        updates = payload.model_dump(exclude={"author"})
        updates["location"]["type"] = "Point"
        if updates["photo"] is None:
            # no new upload, keep the current photo
            del updates["photo"]
        if payload.name != current.get("name"):
            updates["slug"] = self._unique_slug(payload.name, exclude_id=oid)

        try:
            store = self.stores.find_one_and_update(
                {"_id": oid, "author": current["author"]},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise ConflictError("Another store just took that name, please try again")
        return self._populate_one(store)

    def get_store(self, store_id: Any) -> Dict[str, Any]:
        return self._populate_one(self.stores.find_one({"_id": _oid(store_id)}))

    def get_store_by_slug(self, slug: str) -> Dict[str, Any]:
        return self._populate_one(self.stores.find_one({"slug": slug}))

    def list_stores(self, page: int = 1, page_size: int = PAGE_SIZE) -> StorePage:
        page = max(int(page), 1)
        skip = (page * page_size) - page_size
        cursor = self.stores.find().sort("created", DESCENDING).skip(skip).limit(page_size)
        stores = self._populate(list(cursor))
        count = self.stores.count_documents({})
        return StorePage(stores=stores, page=page, pages=math.ceil(count / page_size), count=count)

    # Tags

    def get_tags_list(self) -> List[Dict[str, Any]]:
        pipeline = [
            {"$unwind": "$tags"},
            {"$group": {"_id": "$tags", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
        ]
        return list(self.stores.aggregate(pipeline))

    def get_stores_by_tag(self, tag: Optional[str] = None) -> Dict[str, Any]:
        tag_query: Any = tag or {"$exists": True, "$ne": []}
        stores = self._populate(list(self.stores.find({"tags": tag_query})))
        return {"tag": tag, "tags": self.get_tags_list(), "stores": stores}

    # Aggregations / search

    def get_top_stores(self) -> List[Dict[str, Any]]:
        pipeline = [
            {"$lookup": {"from": "review", "localField": "_id", "foreignField": "store", "as": "reviews"}},
            {"$unwind": "$reviews"},
            {
                "$group": {
                    "_id": "$_id",
                    "name": {"$first": "$name"},
                    "slug": {"$first": "$slug"},
                    "photo": {"$first": "$photo"},
                    "reviews": {"$push": "$reviews"},
                    "reviewCount": {"$sum": 1},
                    "averageRating": {"$avg": "$reviews.rating"},
                }
            },
            # stores with a single review are too noisy to rank
            {"$match": {"reviewCount": {"$gte": 2}}},
            {"$sort": {"averageRating": -1}},
            {"$limit": TOP_STORES_LIMIT},
        ]
        return serialize(list(self.stores.aggregate(pipeline)))

    def search_stores(self, query: str) -> List[Dict[str, Any]]:
        score = {"score": {"$meta": "textScore"}}
        cursor = (
            self.stores.find({"$text": {"$search": query}}, score)
            .sort([("score", {"$meta": "textScore"})])
            .limit(SEARCH_LIMIT)
        )
        return self._populate(list(cursor))

    def stores_near(self, lng: float, lat: float, max_distance: int = NEAR_MAX_DISTANCE) -> List[Dict[str, Any]]:
        q = {
            "location": {
                "$near": {
                    "$geometry": {"type": "Point", "coordinates": [float(lng), float(lat)]},
                    "$maxDistance": max_distance,
                }
            }
        }
        return serialize(list(self.stores.find(q, NEAR_FIELDS).limit(NEAR_LIMIT)))

    # Hearts

    def toggle_heart(self, user_id: Any, store_id: Any) -> List[str]:
        uid = to_object_id(user_id)
        sid = _oid(store_id)
        user = self.users.find_one({"_id": uid}, {"hearts": 1})
        if not user:
            raise NotFoundError("No user found")
        operator = "$pull" if sid in user.get("hearts", []) else "$addToSet"
        user = self.users.find_one_and_update(
            {"_id": uid},
            {operator: {"hearts": sid}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize(user.get("hearts", []))

    def get_hearted_stores(self, user_id: Any) -> List[Dict[str, Any]]:
        user = self.users.find_one({"_id": to_object_id(user_id)}, {"hearts": 1})
        if not user:
            raise NotFoundError("No user found")
        return self._populate(list(self.stores.find({"_id": {"$in": user.get("hearts", [])}})))

    # Reviews

    def add_review(self, author_id: Any, store_id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = parse(ReviewInput, data)
        sid = _oid(store_id)
        if not self.stores.find_one({"_id": sid}, {"_id": 1}):
            raise NotFoundError("No store found")
        doc = payload.model_dump()
        doc["author"] = to_object_id(author_id)
        doc["store"] = sid
        doc["created"] = self.clock()
        res = self.reviews.insert_one(doc)
        review = self.reviews.find_one({"_id": res.inserted_id})
        return serialize(self._populate_reviews([review])[0])
