import datetime

import tinydb

from hytale_top.errors import BadRequest, Forbidden, NotFound, Unauthenticated
from hytale_top.servers import is_string_list, touch_server
from hytale_top.store import REVIEWS, SERVERS, Doc, as_id, get_doc, to_iso, utcnow

REVIEW_SORTS = ("recent", "helpful", "rating")
DEFAULT_REVIEW_LIMIT = 10


def empty_distribution() -> dict[str, int]:
    return {str(stars): 0 for stars in range(1, 6)}


def validate_rating(rating) -> int:
    if isinstance(rating, bool) or not isinstance(rating, (int, float)):
        raise BadRequest("Rating must be between 1 and 5")
    if rating != int(rating) or not 1 <= rating <= 5:
        raise BadRequest("Rating must be between 1 and 5")
    return int(rating)


def review_view(doc) -> dict:
    return {
        "id": str(doc.doc_id),
        "serverId": doc["serverId"],
        "userId": doc["userId"],
        "username": doc["username"],
        "rating": doc["rating"],
        "title": doc["title"],
        "content": doc["content"],
        "pros": doc.get("pros") or [],
        "cons": doc.get("cons") or [],
        "playtime": doc.get("playtime"),
        "verified": doc.get("verified", False),
        "helpful": doc.get("helpful", 0),
        "notHelpful": doc.get("notHelpful", 0),
        "createdAt": to_iso(doc.get("createdAt")),
        "updatedAt": to_iso(doc.get("updatedAt")),
    }


def review_stats(db: tinydb.TinyDB, server_id: str) -> dict:
    ratings = [
        doc.get("rating") or 0
        for doc in db.table(REVIEWS).search(Doc.serverId == str(server_id))
    ]
    distribution = empty_distribution()
    if not ratings:
        return {
            "totalReviews": 0,
            "averageRating": 0,
            "ratingDistribution": distribution,
        }
    for rating in ratings:
        if 1 <= rating <= 5:
            distribution[str(rating)] += 1
    return {
        "totalReviews": len(ratings),
        "averageRating": round(sum(ratings) / len(ratings), 1),
        "ratingDistribution": distribution,
    }


def update_server_rating(db: tinydb.TinyDB, server_id: str) -> None:
    stats = review_stats(db, server_id)
    touch_server(
        db,
        server_id,
        {
            "averageRating": stats["averageRating"],
            "totalReviews": stats["totalReviews"],
        },
    )


def server_reviews(
    db: tinydb.TinyDB,
    server_id: str | None,
    limit: int = DEFAULT_REVIEW_LIMIT,
    sort_by: str = "recent",
) -> list[dict]:
    if not server_id:
        raise BadRequest("Server ID is required")
    docs = db.table(REVIEWS).search(Doc.serverId == str(server_id))
    if sort_by == "helpful":
        docs.sort(key=lambda doc: doc.get("helpful", 0), reverse=True)
    elif sort_by == "rating":
        docs.sort(key=lambda doc: doc.get("rating", 0), reverse=True)
    else:
        docs.sort(key=lambda doc: doc.get("createdAt", 0), reverse=True)
    return [review_view(doc) for doc in docs[: max(limit, 0)]]


def submit_review(
    db: tinydb.TinyDB, body: dict, now: datetime.datetime | None = None
) -> dict:
    required = ("serverId", "userId", "username", "rating", "title", "content")
    if any(not body.get(field) for field in required):
        raise BadRequest("Missing required fields")
    for field in ("username", "title", "content"):
        if not isinstance(body[field], str):
            raise BadRequest(f"{field} must be a string")
    for field in ("pros", "cons"):
        if body.get(field) is not None and not is_string_list(body[field]):
            raise BadRequest(f"{field} must be a list of strings")
    playtime = body.get("playtime") or None
    if playtime is not None and not isinstance(playtime, str):
        raise BadRequest("playtime must be a string")
    rating = validate_rating(body["rating"])
    server_id = str(body["serverId"])
    if get_doc(db.table(SERVERS), server_id) is None:
        raise NotFound("Server not found")
    now_ts = (now or utcnow()).timestamp()
    review_id = db.table(REVIEWS).insert(
        {
            "serverId": server_id,
            "userId": as_id(body["userId"]),
            "username": body["username"],
            "rating": rating,
            "title": body["title"],
            "content": body["content"],
            "pros": body.get("pros") or [],
            "cons": body.get("cons") or [],
            "playtime": playtime,
            "verified": False,
            "helpful": 0,
            "notHelpful": 0,
            "createdAt": now_ts,
            "updatedAt": now_ts,
        }
    )
    update_server_rating(db, server_id)
    return review_view(db.table(REVIEWS).get(doc_id=review_id))


def mark_review_helpful(db: tinydb.TinyDB, review_id, helpful) -> None:
    if not review_id or not isinstance(helpful, bool):
        raise BadRequest("Review ID and helpful flag are required")
    reviews = db.table(REVIEWS)
    doc = get_doc(reviews, review_id)
    if doc is None:
        raise NotFound("Review not found")
    field = "helpful" if helpful else "notHelpful"

    def bump(review):
        review[field] = review.get(field, 0) + 1

    reviews.update(bump, doc_ids=[doc.doc_id])


def delete_review(db: tinydb.TinyDB, review_id, user_id) -> None:
    if not review_id:
        raise BadRequest("Review ID is required")
    user_id = as_id(user_id)
    if not user_id:
        raise Unauthenticated("You must be logged in to delete a review")
    reviews = db.table(REVIEWS)
    doc = get_doc(reviews, review_id)
    if doc is None:
        raise NotFound("Review not found")
    if as_id(doc["userId"]) != user_id:
        raise Forbidden("You can only delete your own reviews")
    reviews.remove(doc_ids=[doc.doc_id])
    update_server_rating(db, doc["serverId"])
