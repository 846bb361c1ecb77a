import locale
import re
import time
import traceback

import cachetools
import orjson
import tinydb
from aiohttp import web

from hytale_top import admin, config, latency, query, reviews, servers, sitemap, uptime, votes
from hytale_top.errors import BadRequest, DirectoryError, NotFound, Unauthenticated
from hytale_top.store import open_db, utcnow

DB = web.AppKey("db", tinydb.TinyDB)
ADMIN_API_KEY = web.AppKey("admin_api_key", str)
GEOIP = web.AppKey("geoip", object)
BASE_URL = web.AppKey("base_url", str)
SITEMAP_CACHE = web.AppKey("sitemap_cache", cachetools.TTLCache)
QUERY_CACHE = web.AppKey("query_cache", cachetools.TTLCache)

SITEMAP_TTL = 60 * 60
QUERY_TTL = 30

NO_STORE = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Access-Control-Allow-Origin": "*",
}

HOST_PATTERN = re.compile(
    r"^(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)$"
    r"|^[a-zA-Z0-9][-a-zA-Z0-9]*(\.[a-zA-Z0-9][-a-zA-Z0-9]*)+$"
)

routes = web.RouteTableDef()


def encode_json(obj):
    return orjson.dumps(obj).decode("utf-8")


def respond(body: dict, status: int = 200, headers=None) -> web.Response:
    return web.json_response(
        {"success": True, **body}, status=status, headers=headers, dumps=encode_json
    )


def fail(message: str, status: int = 500) -> web.Response:
    return web.json_response(
        {"success": False, "error": message}, status=status, dumps=encode_json
    )


def failure(message: str):
    """
    Sets the message a handler answers with when it fails unexpectedly.
    """

    def decorate(handler):
        handler.failure_message = message
        return handler

    return decorate


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except DirectoryError as e:
        return fail(e.message, e.status)
    except Exception:
        traceback.print_exc()
        message = getattr(request.match_info.handler, "failure_message", None)
        return fail(message or "Internal server error")


async def read_json(request: web.Request) -> dict:
    try:
        body = await request.json(loads=orjson.loads)
    except (orjson.JSONDecodeError, UnicodeDecodeError):
        raise BadRequest("Invalid JSON body") from None
    if not isinstance(body, dict):
        raise BadRequest("Invalid JSON body")
    return body


def int_param(request: web.Request, name: str, default: int) -> int:
    try:
        return int(request.query.get(name, default))
    except ValueError:
        return default


def require_admin(request: web.Request):
    key = request.app[ADMIN_API_KEY]
    if key and request.headers.get("Authorization") != f"Bearer {key}":
        raise Unauthenticated("Unauthorized")


def invalidate_sitemap(request: web.Request):
    request.app[SITEMAP_CACHE].clear()


# servers


@routes.get("/api/servers")
@failure("Failed to fetch servers")
async def get_servers(request: web.Request):
    q = request.query
    body = servers.list_servers(
        request.app[DB],
        search=q.get("search", ""),
        category=q.get("category", "all"),
        sort_by=q.get("sortBy", "votes"),
        online_only=q.get("onlineOnly") == "true",
        page=int_param(request, "page", 1),
        page_size=int_param(request, "pageSize", servers.DEFAULT_PAGE_SIZE),
    )
    return respond(body)


@routes.post("/api/servers")
@failure("Failed to submit server")
async def post_server(request: web.Request):
    body = await read_json(request)
    server = servers.create_server(
        request.app[DB], body.get("userId"), body.get("userEmail"), body
    )
    invalidate_sitemap(request)
    print(f"Server added: {server['name']} ({server['id']})")
    return respond({"server": server}, status=201)


@routes.get("/api/servers/{slug}")
@failure("Failed to fetch server")
async def get_server(request: web.Request):
    server = servers.get_server(request.app[DB], request.match_info["slug"])
    return respond({"server": server})


@routes.put("/api/servers/{slug}/manage")
@failure("Failed to update server")
async def put_server(request: web.Request):
    body = await read_json(request)
    server = servers.update_server(
        request.app[DB], request.match_info["slug"], body.get("userId"), body.get("updates")
    )
    invalidate_sitemap(request)
    return respond({"message": "Server updated successfully", "server": server})


@routes.delete("/api/servers/{slug}/manage")
@failure("Failed to delete server")
async def delete_server(request: web.Request):
    servers.delete_server(
        request.app[DB], request.match_info["slug"], request.query.get("userId")
    )
    invalidate_sitemap(request)
    return respond({"message": "Server deleted successfully"})


@routes.get("/api/my-servers")
@failure("Failed to fetch servers")
async def get_my_servers(request: web.Request):
    found = servers.owner_servers(request.app[DB], request.query.get("userId"))
    return respond({"servers": found, "count": len(found)})


@routes.get("/api/categories")
@failure("Failed to fetch categories")
async def get_categories(request: web.Request):
    return respond({"categories": servers.category_stats(request.app[DB])})


# votes


@routes.post("/api/vote")
@failure("Failed to process vote")
async def post_vote(request: web.Request):
    body = await read_json(request)
    count = votes.cast_vote(
        request.app[DB],
        body.get("serverId"),
        body.get("userId"),
        body.get("username"),
        body.get("userEmail"),
    )
    return respond({"message": "Vote recorded successfully", "newVoteCount": count})


@routes.get("/api/vote")
@failure("Failed to fetch votes")
async def get_votes(request: web.Request):
    history = votes.vote_history(
        request.app[DB],
        request.query.get("serverId"),
        int_param(request, "limit", votes.DEFAULT_HISTORY_LIMIT),
    )
    return respond(history)


# reviews


@routes.get("/api/reviews")
@failure("Failed to fetch reviews")
async def get_reviews(request: web.Request):
    server_id = request.query.get("serverId")
    found = reviews.server_reviews(
        request.app[DB],
        server_id,
        int_param(request, "limit", reviews.DEFAULT_REVIEW_LIMIT),
        request.query.get("sortBy", "recent"),
    )
    stats = reviews.review_stats(request.app[DB], server_id)
    return respond({"data": {"reviews": found, "stats": stats}})


@routes.post("/api/reviews")
@failure("Failed to submit review")
async def post_review(request: web.Request):
    review = reviews.submit_review(request.app[DB], await read_json(request))
    return respond({"review": review})


@routes.patch("/api/reviews")
@failure("Failed to update review")
async def patch_review(request: web.Request):
    body = await read_json(request)
    reviews.mark_review_helpful(request.app[DB], body.get("reviewId"), body.get("helpful"))
    return respond({})


@routes.delete("/api/reviews")
@failure("Failed to delete review")
async def delete_review(request: web.Request):
    body = await read_json(request)
    reviews.delete_review(request.app[DB], body.get("reviewId"), body.get("userId"))
    return respond({})


# latency


@routes.get("/api/user-ping")
async def get_user_ping(request: web.Request):
    location = latency.user_location(
        request.headers, request.remote, request.app[GEOIP]
    )
    return respond(
        {
            "timestamp": int(utcnow().timestamp() * 1000),
            "echo": True,
            "location": location,
        },
        headers=NO_STORE,
    )


@routes.post("/api/user-ping")
@failure("Failed to ping server")
async def post_user_ping(request: web.Request):
    body = await read_json(request)
    server_id = body.get("serverId")
    ip = body.get("ip")
    port = body.get("port")
    name = "Unknown Server"
    if server_id:
        doc = servers.find_server(request.app[DB], str(server_id))
        if doc is None:
            raise NotFound("Server not found")
        ip = doc.get("ip")
        port = doc.get("port")
        name = doc.get("name") or name
    if not ip:
        raise BadRequest("No server IP provided")
    port = servers.validate_port(port)

    start = time.perf_counter()
    server_latency = await latency.measure_server_latency(ip, port)
    measurement_time = round((time.perf_counter() - start) * 1000)
    return respond(
        {
            "serverId": server_id,
            "serverName": name,
            "serverIp": ip,
            "serverPort": port,
            "latency": {
                "serverLatency": server_latency,
                "measurementTime": measurement_time,
                "timestamp": int(utcnow().timestamp() * 1000),
            },
            "userLocation": latency.user_location(
                request.headers, request.remote, request.app[GEOIP]
            ),
            "rating": latency.latency_rating(server_latency),
        },
        headers=NO_STORE,
    )


@routes.get("/api/query")
@failure("Failed to query server")
async def get_query(request: web.Request):
    ip = request.query.get("ip")
    if not ip:
        raise BadRequest("IP address is required")
    if not HOST_PATTERN.match(ip):
        raise BadRequest("Invalid IP address or hostname")
    port = servers.validate_port(request.query.get("port"))
    cache = request.app[QUERY_CACHE]
    result = cache.get((ip, port))
    if result is None:
        result = await query.query_server(ip, port)
        cache[(ip, port)] = result
    return respond(result)


@routes.get("/api/uptime")
@failure("Failed to fetch uptime data")
async def get_uptime(request: web.Request):
    hours = max(int_param(request, "hours", uptime.DEFAULT_HOURS), 1)
    stats = uptime.uptime_stats(request.app[DB], request.query.get("serverId"), hours)
    chart = uptime.aggregate_uptime_for_chart(stats["history"], min(hours, 24))
    return respond(
        {
            "data": {
                "uptimePercentage": stats["uptimePercentage"],
                "avgPlayers": stats["avgPlayers"],
                "maxPlayers": stats["maxPlayers"],
                "totalChecks": stats["totalChecks"],
                "onlineChecks": stats["onlineChecks"],
                "history": uptime.history_view(stats["history"]),
                "chartData": chart,
            }
        }
    )


# admin jobs


@routes.post("/api/ping")
@failure("Failed to ping servers")
async def post_ping(request: web.Request):
    require_admin(request)
    result = await admin.ping_all_servers(request.app[DB])
    return respond(
        {"message": f"Pinged {result['summary']['total']} servers", **result}
    )


@routes.get("/api/ping")
@failure("Failed to get server status")
async def get_ping(request: web.Request):
    return respond(admin.ping_status(request.app[DB]))


@routes.put("/api/reset-votes")
@failure("Failed to reset votes")
async def put_reset_votes(request: web.Request):
    require_admin(request)
    count = admin.reset_votes(request.app[DB])
    return respond({"message": f"Reset votes for {count} servers to 0", "count": count})


@routes.put("/api/update-categories")
@failure("Failed to update categories")
async def put_update_categories(request: web.Request):
    require_admin(request)
    results = admin.update_categories(request.app[DB])
    invalidate_sitemap(request)
    return respond(
        {"message": f"Updated categories for {len(results)} servers", "results": results}
    )


@routes.post("/api/seed")
@failure("Failed to seed database")
async def post_seed(request: web.Request):
    require_admin(request)
    result = admin.seed_servers(
        request.app[DB], clear=request.query.get("clear") == "true"
    )
    invalidate_sitemap(request)
    return respond(
        {
            "message": f"Seeded {result['successful']} servers ({result['failed']} failed)",
            **result,
        }
    )


@routes.get("/api/seed")
@failure("Failed to check database")
async def get_seed(request: web.Request):
    count = admin.server_count(request.app[DB])
    return respond({"count": count, "message": f"Database has {count} servers"})


@routes.delete("/api/seed")
@failure("Failed to clear database")
async def delete_seed(request: web.Request):
    require_admin(request)
    deleted = admin.clear_servers(request.app[DB])
    invalidate_sitemap(request)
    return respond({"message": f"Deleted {deleted} servers", "deleted": deleted})


# crawlers


@routes.get("/sitemap.xml")
@failure("Error generating sitemap")
async def get_sitemap(request: web.Request):
    cache = request.app[SITEMAP_CACHE]
    xml = cache.get("sitemap")
    if xml is None:
        xml = sitemap.build_sitemap(request.app[DB], request.app[BASE_URL])
        cache["sitemap"] = xml
    return web.Response(
        text=xml,
        content_type="application/xml",
        charset="utf-8",
        headers={"Cache-Control": f"public, max-age={SITEMAP_TTL}"},
    )


@routes.get("/robots.txt")
async def get_robots(request: web.Request):
    return web.Response(text=sitemap.robots_txt(request.app[BASE_URL]))


async def close_resources(app: web.Application):
    app[DB].close()
    if app[GEOIP] is not None:
        app[GEOIP].close()


def create_app(
    db: tinydb.TinyDB | None = None,
    admin_api_key: str | None = config.ADMIN_API_KEY,
    geoip=None,
    base_url: str = config.BASE_URL,
) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[DB] = db if db is not None else open_db()
    app[ADMIN_API_KEY] = admin_api_key
    app[GEOIP] = geoip
    app[BASE_URL] = base_url
    app[SITEMAP_CACHE] = cachetools.TTLCache(maxsize=1, ttl=SITEMAP_TTL)
    app[QUERY_CACHE] = cachetools.TTLCache(maxsize=1000, ttl=QUERY_TTL)
    app.add_routes(routes)
    app.on_cleanup.append(close_resources)
    return app


def start():
    try:
        locale.setlocale(locale.LC_COLLATE, "")
    except locale.Error:
        print("Unsupported LC_COLLATE, server names sort by code point")
    geoip = latency.open_geoip(config.GEOIP_DB)
    app = create_app(open_db(config.DATABASE_PATH), geoip=geoip)
    web.run_app(app, host=config.HOST, port=config.PORT)
