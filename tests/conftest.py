"""
Shared fixtures: a tiny fake Sakai portal served by aiohttp's TestServer.

Layout of the fake portal
-------------------------
* ``POST /portal/relogin`` -> site listing (or a bare login page on bad creds)
* ``GET /portal/site/<id>`` -> tool listing for that site; ``~user`` ids are
  workspaces
* ``GET /portal/site/<id>/tool/<id>`` -> tool listing again (so users can keep
  browsing)
* ``GET /portal/site/<id>/page/<id>`` -> outer page embedding the tool iframe
* ``GET /portal/tool/<id>`` -> the inner tool, with tool listing
* ``POST /portal/logout``
"""
import asyncio
from collections import Counter

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

SITE_A = "0123456789abcdef0123456789abcdef"
SITE_B = "aaaa-bbbb-cccc-dddd-eeee"
TOOL_1 = "11111111-2222-3333-4444-555555555555"
TOOL_2 = "66666666-7777-8888-9999-000000000000"
PAGE_1 = "abcdefab-cdef-abcd-efab-cdefabcdefab"
INNER_TOOL = "fedcbafe-dcba-fedc-bafe-dcbafedcbafe"

PASSWORDS = {"alice": "p1", "bob": "p2"}


def portal_html():
    return (
        "<ul>"
        f'<li><a href="/portal/site/{SITE_A}" title="Biology 101">Biology</a></li>'
        f'<li><a href="/portal/site/{SITE_B}" title="Chemistry &amp; Labs">Chem</a></li>'
        f'<li><a href="/portal/site/{SITE_A}" title="Biology 101">Biology again</a></li>'
        '<li><a href="/portal/site/%7Ealice" title="My Workspace">Home</a></li>'
        "</ul>"
    )


def site_html(site_id):
    return (
        "<nav>"
        f'<a href="/portal/site/{site_id}/tool/{TOOL_1}" title="Announcements">A</a>'
        f'<a href="/portal/site/{site_id}/page/{PAGE_1}" title="Resources">R</a>'
        f'<a href="/portal/site/{site_id}/tool/{TOOL_2}" title="Gradebook">G</a>'
        '<a href="/portal/site/%7Ealice" title="Home">Home</a>'
        "</nav>"
    )


def outer_page_html():
    return f'<div><iframe class="portletMainIframe" src="/portal/tool/{INNER_TOOL}?panel=Main"></iframe></div>'


def make_portal_app():
    app = web.Application()
    app["hits"] = []
    app["logins"] = Counter()

    @web.middleware
    async def record_hits(request, handler):
        request.app["hits"].append((request.method, request.path))
        return await handler(request)

    app.middlewares.append(record_hits)

    async def relogin(request):
        form = await request.post()
        if PASSWORDS.get(form.get("eid")) != form.get("pw") or form.get("submit") != "Login":
            return web.Response(text="<form>Invalid login</form>", content_type="text/html")
        request.app["logins"][form["eid"]] += 1
        return web.Response(text=portal_html(), content_type="text/html")

    async def site(request):
        site_id = request.match_info["site_id"]
        if site_id.startswith("~"):
            return web.Response(text="<h1>My Workspace</h1>", content_type="text/html")
        return web.Response(text=site_html(site_id), content_type="text/html")

    async def site_tool(request):
        return web.Response(text=site_html(request.match_info["site_id"]), content_type="text/html")

    async def site_page(request):
        return web.Response(text=outer_page_html(), content_type="text/html")

    async def inner_tool(request):
        return web.Response(text=site_html(SITE_A), content_type="text/html")

    async def logout(request):
        return web.Response(text="bye", content_type="text/html")

    async def echo(request):
        form = await request.post()
        body = "&".join(f"{k}={v}" for k, v in form.items())
        return web.Response(text=body)

    async def slow(request):
        await asyncio.sleep(1)
        return web.Response(text="late")

    async def status(request):
        return web.Response(status=int(request.match_info["code"]), text="status")

    app.router.add_post("/portal/relogin", relogin)
    app.router.add_get("/portal/site/{site_id}", site)
    app.router.add_get("/portal/site/{site_id}/tool/{tool_id}", site_tool)
    app.router.add_get("/portal/site/{site_id}/page/{page_id}", site_page)
    app.router.add_get("/portal/tool/{tool_id}", inner_tool)
    app.router.add_post("/portal/logout", logout)
    app.router.add_post("/echo", echo)
    app.router.add_get("/slow", slow)
    app.router.add_get("/status/{code}", status)
    return app


@pytest_asyncio.fixture
async def portal():
    server = TestServer(make_portal_app())
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


@pytest.fixture
def base_url_of():
    def _base(server):
        return str(server.make_url("/"))
    return _base
