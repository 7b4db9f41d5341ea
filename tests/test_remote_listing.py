import httpx
import pytest

from harvester import remote_listing
from harvester.remote_listing import (
    ListingFetchError,
    RemoteCrawler,
    is_contained,
    parse_listing,
    prioritize_directories,
)

ROOT = "https://example.com/archive/"


def apache_page(title: str, entries: list[str]) -> str:
    rows = "\n".join(
        '<tr><td valign="top"><img src="/icons/unknown.gif" alt="[   ]"></td>'
        f'<td><a href="{href}">{href}</a></td>'
        '<td align="right">2021-05-01 10:00  </td><td align="right">  - </td></tr>'
        for href in entries
    )
    return f"""<!DOCTYPE HTML PUBLIC "-//W3C//DTD HTML 3.2 Final//EN">
<html>
 <head><title>Index of {title}</title></head>
 <body>
<h1>Index of {title}</h1>
  <table>
   <tr><th valign="top"><img src="/icons/blank.gif" alt="[ICO]"></th>
   <th><a href="?C=N;O=D">Name</a></th><th><a href="?C=M;O=A">Last modified</a></th>
   <th><a href="?C=S;O=A">Size</a></th></tr>
   <tr><th colspan="5"><hr></th></tr>
<tr><td valign="top"><img src="/icons/back.gif" alt="[PARENTDIR]"></td>
<td><a href="/">Parent Directory</a></td><td>&nbsp;</td><td align="right">  - </td></tr>
{rows}
   <tr><th colspan="5"><hr></th></tr>
</table>
<address>Apache/2.4.41 (Ubuntu) Server at example.com Port 443</address>
</body></html>
"""


NGINX_PAGE = """<html>
<head><title>Index of /archive/2021/</title></head>
<body>
<h1>Index of /archive/2021/</h1><hr><pre><a href="../">../</a>
<a href="05/">05/</a>                                      01-May-2021 10:00       -
<a href="story%201.xml">story 1.xml</a>                    01-May-2021 10:00    4096
<a href="photo.jpg">photo.jpg</a>                          01-May-2021 10:00  204800
</pre><hr></body>
</html>
"""

IIS_PAGE = """<html><head><title>example.com - /archive/2021/</title></head><body>
<H1>example.com - /archive/2021/</H1><hr>

<pre><A HREF="/archive/">[To Parent Directory]</A><br><br>
  5/1/2021 10:00 AM        &lt;dir&gt; <A HREF="/archive/2021/05/">05</A><br>
  5/1/2021 10:00 AM         4096 <A HREF="/archive/2021/item.XML">item.XML</A><br>
</pre><hr></body></html>
"""


def test_apache_listing_skips_sort_and_parent_links():
    html = apache_page("/archive", ["2021/", "story.xml", "photo.jpg"])

    listing = parse_listing(html, ROOT)

    assert listing.strategy == "apache_table"
    assert listing.directories == ["https://example.com/archive/2021/"]
    assert listing.files == ["https://example.com/archive/story.xml"]


def test_nginx_listing():
    listing = parse_listing(NGINX_PAGE, "https://example.com/archive/2021/")

    assert listing.strategy == "pre_autoindex"
    assert listing.directories == ["https://example.com/archive/2021/05/"]
    assert listing.files == ["https://example.com/archive/2021/story%201.xml"]


def test_iis_listing():
    listing = parse_listing(IIS_PAGE, "https://example.com/archive/2021/")

    assert listing.directories == ["https://example.com/archive/2021/05/"]
    assert listing.files == ["https://example.com/archive/2021/item.XML"]


def test_bare_anchors_directly_in_body():
    html = '<body><A HREF="a.xml">a.xml</A> <A HREF="sub/">sub</A></body>'

    listing = parse_listing(html, ROOT)

    assert listing.strategy == "iis_body"
    assert listing.files == ["https://example.com/archive/a.xml"]
    assert listing.directories == ["https://example.com/archive/sub/"]


def test_apache_rows_with_extra_attributes_and_single_quotes():
    html = (
        '<table><tr><th><a href="?C=N;O=D">Name</a></th></tr>'
        '<tr><td><a class="f" href="x.xml">x.xml</a></td></tr>'
        "<tr><td><a href='sub/' title='sub'>sub/</a></td></tr></table>"
    )

    listing = parse_listing(html, ROOT)

    assert listing.strategy == "apache_table"
    assert listing.files == ["https://example.com/archive/x.xml"]
    assert listing.directories == ["https://example.com/archive/sub/"]


def test_pre_listing_with_single_quoted_links():
    html = "<pre><a href='../'>../</a>\n<a rel='nofollow' href='a.xml'>a.xml</a></pre>"

    listing = parse_listing(html, ROOT)

    assert listing.strategy == "pre_autoindex"
    assert listing.files == ["https://example.com/archive/a.xml"]


def test_link_tags_are_the_last_resort():
    html = '<head><link rel="alternate" href="feed.xml"></head><body>empty</body>'

    listing = parse_listing(html, ROOT)

    assert listing.strategy == "bare_href"
    assert listing.files == ["https://example.com/archive/feed.xml"]


def test_generic_anchor_drops_parent_directory_text():
    html = (
        "<ul><li><a href='/archive/'>Parent Directory</a></li>"
        "<li><a class='file' href='x.xml'>x.xml</a></li></ul>"
    )

    listing = parse_listing(html, "https://example.com/archive/sub/")

    assert listing.strategy == "generic_anchor"
    assert listing.files == ["https://example.com/archive/sub/x.xml"]
    assert listing.directories == []


def test_unparseable_page_yields_empty_listing():
    listing = parse_listing("<html><body>Nothing here</body></html>", ROOT)
    assert listing.files == [] and listing.directories == []
    assert listing.strategy is None


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://example.com/archive/2021/a.xml", True),
        ("https://example.com:443/archive/a.xml", True),
        ("https://example.com/archive", True),
        ("http://example.com/archive/a.xml", False),
        ("https://other.example.com/archive/a.xml", False),
        ("https://example.com/archive2/a.xml", False),
        ("https://example.com/archive/../secret.xml", False),
    ],
)
def test_containment(url, expected):
    assert is_contained(url, ROOT) is expected


def test_directory_priority():
    ordered = prioritize_directories(
        [
            "https://example.com/archive/misc/",
            "https://example.com/archive/may/",
            "https://example.com/archive/2021/",
            "https://example.com/archive/processed/",
            "https://example.com/archive/05/",
        ]
    )

    names = [url.rstrip("/").rsplit("/", 1)[-1] for url in ordered]
    assert names == ["processed", "2021", "may", "05", "misc"]


def _site():
    return {
        ROOT: apache_page("/archive", ["misc/", "2021/", "processed/"]),
        f"{ROOT}processed/": apache_page(
            "/archive/processed", ["a.xml", "b.xml", "image.jpg", "sub/"]
        ),
        f"{ROOT}processed/sub/": apache_page("/archive/processed/sub", ["z.xml"]),
        f"{ROOT}2021/": apache_page("/archive/2021", ["05/"]),
        f"{ROOT}2021/05/": apache_page(
            "/archive/2021/05",
            ["c.xml", "https://other.example.com/archive/2021/05/evil.xml"],
        ),
        f"{ROOT}misc/": apache_page("/archive/misc", ["/archive/misc/", "broken/"]),
        f"{ROOT}misc/broken/": 500,
    }


def _client(pages, requested=None):
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if requested is not None:
            requested.append(url)
        page = pages.get(url, 404)
        if isinstance(page, int):
            return httpx.Response(page)
        return httpx.Response(200, text=page)

    return httpx.Client(transport=httpx.MockTransport(handler))


def test_crawl_collects_contained_files_in_priority_order():
    requested = []
    crawler = RemoteCrawler(_client(_site(), requested), max_depth=5)

    result = crawler.crawl(ROOT)

    assert result.files == [
        f"{ROOT}processed/a.xml",
        f"{ROOT}processed/b.xml",
        f"{ROOT}2021/05/c.xml",
    ]
    assert not result.capped
    assert len(result.warnings) == 1
    assert "misc/broken/" in result.warnings[0]
    # directories that list files are not descended
    assert f"{ROOT}processed/sub/" not in requested


def test_self_referential_listing_terminates():
    requested = []
    pages = {
        ROOT: apache_page("/archive", ["loop/"]),
        f"{ROOT}loop/": apache_page("/archive/loop", ["/archive/loop/", "./", "../"]),
    }

    result = RemoteCrawler(_client(pages, requested)).crawl(ROOT)

    assert result.files == []
    assert requested.count(f"{ROOT}loop/") == 1
    assert result.visited == 2


def test_depth_bound_limits_descent():
    result = RemoteCrawler(_client(_site()), max_depth=2).crawl(ROOT)

    assert result.files == [f"{ROOT}processed/a.xml", f"{ROOT}processed/b.xml"]


def test_file_cap_stops_crawl():
    result = RemoteCrawler(_client(_site()), max_files=2).crawl(ROOT)

    assert result.capped
    assert len(result.files) == 2


def test_root_fetch_failure_raises():
    crawler = RemoteCrawler(_client({ROOT: 503}))

    with pytest.raises(ListingFetchError):
        crawler.crawl(ROOT)


def test_progress_callback_receives_messages():
    messages = []
    crawler = RemoteCrawler(_client(_site()), on_progress=messages.append)

    crawler.crawl(ROOT)

    assert any("Found 2 file(s)" in message for message in messages)
    assert messages[-1].startswith("Remote scan finished: 3 file(s)")


def test_crawler_closes_only_its_own_client():
    client = _client({})
    with RemoteCrawler(client) as crawler:
        assert crawler.client is client
    assert not client.is_closed

    owned = RemoteCrawler()
    owned_client = owned.client
    owned.close()
    assert owned_client.is_closed
    assert remote_listing.DEFAULT_MAX_DEPTH == 5
