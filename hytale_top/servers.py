import copy
import datetime
import locale
import math
import re

import tinydb

from hytale_top.errors import BadRequest, Forbidden, NotFound, Unauthenticated
from hytale_top.store import SERVERS, as_id, get_doc, remove_none, to_iso, utcnow

CATEGORY_INFO = {
    "survival": {"label": "Survival", "icon": "🌲", "color": "#22c55e"},
    "pvp": {"label": "PvP", "icon": "⚔️", "color": "#ef4444"},
    "creative": {"label": "Creative", "icon": "🎨", "color": "#a855f7"},
    "minigames": {"label": "Minigames", "icon": "🎮", "color": "#f97316"},
    "roleplay": {"label": "Roleplay", "icon": "🎭", "color": "#ec4899"},
    "adventure": {"label": "Adventure", "icon": "🗺️", "color": "#0ea5e9"},
    "economy": {"label": "Economy", "icon": "💰", "color": "#eab308"},
    "skyblock": {"label": "Skyblock", "icon": "🏝️", "color": "#06b6d4"},
    "modded": {"label": "Modded", "icon": "🔧", "color": "#8b5cf6"},
    "other": {"label": "Other", "icon": "🌟", "color": "#64748b"},
}

DEFAULT_PORT = 5520
DEFAULT_CATEGORY = "survival"
SHORT_DESCRIPTION_LENGTH = 150

SORT_OPTIONS = ("votes", "players", "newest", "name")
DEFAULT_PAGE_SIZE = 50

# every field a server view carries, with the value used when it is missing
SERVER_DEFAULTS = {
    "name": "",
    "ip": "",
    "port": DEFAULT_PORT,
    "description": "",
    "category": DEFAULT_CATEGORY,
    "tags": [],
    "isOnline": False,
    "currentPlayers": 0,
    "maxPlayers": 100,
    "uptime": 0,
    "votes": 0,
    "votesThisMonth": 0,
    "averageRating": 0,
    "totalReviews": 0,
    "website": None,
    "discord": None,
    "banner": None,
    "gallery": [],
    "country": "US",
    "language": ["en"],
    "version": "Unknown",
    "worldShareCode": None,
    "ownerId": None,
    "ownerEmail": None,
    "isFeatured": False,
    "isVerified": False,
    "isPremium": False,
}

SUBMISSION_FIELDS = (
    "name",
    "ip",
    "port",
    "description",
    "shortDescription",
    "category",
    "tags",
    "website",
    "discord",
    "country",
    "language",
    "banner",
    "gallery",
    "worldShareCode",
)

OWNER_EDITABLE_FIELDS = (
    "name",
    "description",
    "shortDescription",
    "category",
    "tags",
    "website",
    "discord",
    "banner",
    "gallery",
)

STRING_FIELDS = (
    "name",
    "ip",
    "description",
    "shortDescription",
    "category",
    "website",
    "discord",
    "country",
    "banner",
    "worldShareCode",
)
STRING_LIST_FIELDS = ("tags", "gallery", "language")

SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")


def slugify(name: str | None) -> str:
    if not name:
        return ""
    return SLUG_SEPARATORS.sub("-", name.lower()).strip("-")


def server_slug(doc_id, raw: dict) -> str:
    return raw.get("slug") or slugify(raw.get("name")) or str(doc_id)


def normalize_server(doc_id, raw: dict, now: datetime.datetime | None = None) -> dict:
    """
    Builds the public view of a stored server document, filling every missing
    field from SERVER_DEFAULTS.
    """
    now_ts = (now or utcnow()).timestamp()
    server = {"id": str(doc_id), "slug": server_slug(doc_id, raw)}
    for field, default in SERVER_DEFAULTS.items():
        value = raw.get(field)
        server[field] = copy.copy(default) if value is None else value
    server["shortDescription"] = (
        raw.get("shortDescription")
        or server["description"][:SHORT_DESCRIPTION_LENGTH]
    )
    server["lastPinged"] = to_iso(raw.get("lastPinged") or 0)
    server["createdAt"] = to_iso(raw.get("createdAt") or now_ts)
    server["updatedAt"] = to_iso(raw.get("updatedAt") or now_ts)
    return server


def all_servers(db: tinydb.TinyDB) -> list[dict]:
    now = utcnow()
    return [normalize_server(doc.doc_id, doc, now) for doc in db.table(SERVERS).all()]


def find_server(db: tinydb.TinyDB, slug: str):
    """
    Finds a stored server by slug, falling back to its id.
    """
    for doc in db.table(SERVERS).all():
        if server_slug(doc.doc_id, doc) == slug or str(doc.doc_id) == slug:
            return doc
    return None


def filter_servers(
    servers: list[dict],
    search: str = "",
    category: str = "all",
    online_only: bool = False,
) -> list[dict]:
    if search:
        term = search.lower()
        servers = [
            server
            for server in servers
            if term in server["name"].lower()
            or term in server["description"].lower()
            or any(term in str(tag).lower() for tag in server["tags"])
        ]
    if category and category != "all":
        servers = [server for server in servers if server["category"] == category]
    if online_only:
        servers = [server for server in servers if server["isOnline"]]
    return servers


def created_at(server: dict) -> datetime.datetime:
    return datetime.datetime.fromisoformat(server["createdAt"])


def name_key(server: dict) -> str:
    return locale.strxfrm(server["name"].casefold())


def sort_servers(servers: list[dict], sort_by: str = "votes") -> list[dict]:
    if sort_by == "votes":
        return sorted(servers, key=lambda s: s["votes"], reverse=True)
    if sort_by == "players":
        return sorted(servers, key=lambda s: s["currentPlayers"], reverse=True)
    if sort_by == "newest":
        return sorted(servers, key=created_at, reverse=True)
    if sort_by == "name":
        return sorted(servers, key=name_key)
    return list(servers)


def paginate(items: list, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE):
    page = max(page, 1)
    page_size = max(page_size, 1)
    start = (page - 1) * page_size
    pagination = {
        "page": page,
        "pageSize": page_size,
        "total": len(items),
        "totalPages": math.ceil(len(items) / page_size),
    }
    return items[start : start + page_size], pagination


def server_stats(servers: list[dict]) -> dict:
    return {
        "totalServers": len(servers),
        "onlineServers": sum(1 for server in servers if server["isOnline"]),
        "totalPlayers": sum(server["currentPlayers"] for server in servers),
        "totalVotes": sum(server["votes"] for server in servers),
    }


def list_servers(
    db: tinydb.TinyDB,
    search: str = "",
    category: str = "all",
    sort_by: str = "votes",
    online_only: bool = False,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> dict:
    servers = filter_servers(all_servers(db), search, category, online_only)
    servers = sort_servers(servers, sort_by)
    page_servers, pagination = paginate(servers, page, page_size)
    return {
        "servers": page_servers,
        "pagination": pagination,
        "stats": server_stats(servers),
    }


def get_server(db: tinydb.TinyDB, slug: str) -> dict:
    if not slug:
        raise BadRequest("Server slug is required")
    doc = find_server(db, slug)
    if doc is None:
        raise NotFound("Server not found")
    return normalize_server(doc.doc_id, doc)


def validate_port(port) -> int:
    if port is None or port == "":
        return DEFAULT_PORT
    try:
        port = int(port)
    except (TypeError, ValueError):
        raise BadRequest("Port must be a number") from None
    if not 0 < port < 65536:
        raise BadRequest("Port must be between 1 and 65535")
    return port


def validate_category(category) -> str:
    if not isinstance(category, str) or category not in CATEGORY_INFO:
        raise BadRequest(f"Unknown category: {category}")
    return category


def is_string_list(value) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def validate_field_types(fields: dict) -> None:
    """
    Rejects submitted fields whose JSON type the read model can't render.
    None is allowed and means the default.
    """
    for field, value in fields.items():
        if value is None:
            continue
        if field in STRING_FIELDS and not isinstance(value, str):
            raise BadRequest(f"{field} must be a string")
        if field in STRING_LIST_FIELDS and not is_string_list(value):
            raise BadRequest(f"{field} must be a list of strings")


def create_server(
    db: tinydb.TinyDB,
    owner_id: str | None,
    owner_email: str | None,
    submission: dict,
    now: datetime.datetime | None = None,
) -> dict:
    """
    Stores a server submitted by an authenticated owner.
    """
    owner_id = as_id(owner_id)
    if not owner_id:
        raise Unauthenticated("You must be logged in to submit a server")
    if owner_email is not None and not isinstance(owner_email, str):
        raise BadRequest("userEmail must be a string")
    fields = {k: submission[k] for k in SUBMISSION_FIELDS if k in submission}
    validate_field_types(fields)
    name =(fields.get("name") or "").strip()
    ip = (fields.get("ip") or "").strip()
    if not name or not ip:
        raise BadRequest("Server name and IP are required")
    slug = slugify(name)
    if not slug:
        raise BadRequest("Server name must contain letters or numbers")
    if find_server(db, slug) is not None:
        raise BadRequest("A server with this name already exists")
    fields["name"] = name
    fields["ip"] = ip
    fields["port"] = validate_port(fields.get("port"))
    fields["category"] = validate_category(fields.get("category") or DEFAULT_CATEGORY)

    now_ts = (now or utcnow()).timestamp()
    doc = remove_none(fields)
    doc.update(
        {
            "slug": slug,
            "ownerId": owner_id,
            "ownerEmail": owner_email,
            "isOnline": False,
            "currentPlayers": 0,
            "maxPlayers": 100,
            "uptime": 0,
            "votes": 0,
            "votesThisMonth": 0,
            "version": "Unknown",
            "isFeatured": False,
            "isVerified": False,
            "isPremium": False,
            "lastPinged": 0,
            "createdAt": now_ts,
            "updatedAt": now_ts,
        }
    )
    doc_id = db.table(SERVERS).insert(doc)
    return normalize_server(doc_id, doc, now)


def owned_server(db: tinydb.TinyDB, slug: str, user_id: str | None):
    user_id = as_id(user_id)
    if not user_id:
        raise Unauthenticated("User not authenticated")
    doc = find_server(db, slug)
    if doc is None:
        raise NotFound("Server not found")
    if as_id(doc.get("ownerId")) != user_id:
        raise Forbidden("You do not own this server")
    return doc


def update_server(
    db: tinydb.TinyDB,
    slug: str,
    user_id: str | None,
    updates: dict | None,
    now: datetime.datetime | None = None,
) -> dict:
    doc = owned_server(db, slug, user_id)
    if not isinstance(updates, dict):
        raise BadRequest("Updates are required")
    changes = {k: updates[k] for k in OWNER_EDITABLE_FIELDS if k in updates}
    validate_field_types(changes)
    # a null edit falls back to the default view instead of storing None
    changes = remove_none(changes)
    if "category" in changes:
        validate_category(changes["category"])
    if "name" in changes and not slugify(changes["name"]):
        raise BadRequest("Server name must contain letters or numbers")
    # the stored slug stays put so existing links keep working
    changes["slug"] = server_slug(doc.doc_id, doc)
    changes["updatedAt"] = (now or utcnow()).timestamp()
    table = db.table(SERVERS)
    table.update(changes, doc_ids=[doc.doc_id])
    return normalize_server(doc.doc_id, table.get(doc_id=doc.doc_id))


def delete_server(db: tinydb.TinyDB, slug: str, user_id: str | None) -> None:
    doc = owned_server(db, slug, user_id)
    db.table(SERVERS).remove(doc_ids=[doc.doc_id])


def owner_servers(db: tinydb.TinyDB, user_id: str | None) -> list[dict]:
    user_id = as_id(user_id)
    if not user_id:
        raise BadRequest("User ID required")
    now = utcnow()
    servers = [
        normalize_server(doc.doc_id, doc, now)
        for doc in db.table(SERVERS).all()
        if as_id(doc.get("ownerId")) == user_id
    ]
    return sorted(servers, key=created_at, reverse=True)


def category_stats(db: tinydb.TinyDB) -> list[dict]:
    servers = all_servers(db)
    categories = []
    for category, info in CATEGORY_INFO.items():
        members = [server for server in servers if server["category"] == category]
        categories.append(
            {
                "category": category,
                **info,
                **server_stats(members),
            }
        )
    return categories


def touch_server(db: tinydb.TinyDB, server_id, fields: dict) -> bool:
    doc = get_doc(db.table(SERVERS), server_id)
    if doc is None:
        return False
    db.table(SERVERS).update(fields, doc_ids=[doc.doc_id])
    return True
