import datetime
from xml.sax.saxutils import escape

import tinydb

from hytale_top.servers import CATEGORY_INFO, all_servers
from hytale_top.store import utcnow

# (path, change frequency, priority)
STATIC_PAGES = (
    ("", "daily", 1.0),
    ("/servers", "hourly", 0.9),
    ("/mods", "daily", 0.85),
    ("/top", "daily", 0.8),
    ("/how-to-join", "monthly", 0.8),
    ("/submit", "monthly", 0.6),
    ("/about", "monthly", 0.5),
    ("/faq", "monthly", 0.5),
)

DISALLOWED_PATHS = ("/api/", "/my-servers", "/profile")

URL_TEMPLATE = """
  <url>
    <loc>{loc}</loc>
    <lastmod>{lastmod}</lastmod>
    <changefreq>{changefreq}</changefreq>
    <priority>{priority}</priority>
  </url>"""


def sitemap_urls(
    db: tinydb.TinyDB, base_url: str, now: datetime.datetime | None = None
) -> list[dict]:
    lastmod = (now or utcnow()).isoformat()
    urls = [
        {
            "loc": base_url + path,
            "lastmod": lastmod,
            "changefreq": changefreq,
            "priority": priority,
        }
        for path, changefreq, priority in STATIC_PAGES
    ]
    urls += [
        {
            "loc": f"{base_url}/category/{category}",
            "lastmod": lastmod,
            "changefreq": "daily",
            "priority": 0.85,
        }
        for category in CATEGORY_INFO
    ]
    urls += [
        {
            "loc": f"{base_url}/servers/{server['slug']}",
            "lastmod": server["updatedAt"],
            "changefreq": "daily",
            "priority": 0.7,
        }
        for server in all_servers(db)
    ]
    return urls


def build_sitemap(
    db: tinydb.TinyDB, base_url: str, now: datetime.datetime | None = None
) -> str:
    body = "".join(
        URL_TEMPLATE.format(
            loc=escape(url["loc"]),
            lastmod=url["lastmod"],
            changefreq=url["changefreq"],
            priority=url["priority"],
        )
        for url in sitemap_urls(db, base_url, now)
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
        f"{body}\n</urlset>\n"
    )


def robots_txt(base_url: str) -> str:
    disallow = "".join(f"Disallow: {path}\n" for path in DISALLOWED_PATHS)
    return (
        f"User-agent: *\nAllow: /\n{disallow}\n"
        f"User-agent: Googlebot\nAllow: /\n{disallow}\n"
        f"Host: {base_url}\nSitemap: {base_url}/sitemap.xml\n"
    )
