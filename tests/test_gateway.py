"""
Tests for the Remote Gateway.

Covers:
- Bearer auth header and JSON bodies
- 401 -> one refresh + retry; failed refresh tears the session down
- Non-2xx -> RequestRejected with the server message verbatim
- Transport errors and timeouts -> NetworkFailure
"""
import json

import httpx
import pytest

from crmsync.services.errors import AuthExpired, NetworkFailure, RequestRejected
from crmsync.services.gateway import AuthSession, CrmApiClient, RemoteGateway

BASE_URL = "http://crm.test/api"


def make_gateway(handler, token="tok-1", refresh_token="ref-1", on_logout=None) -> RemoteGateway:
    session = AuthSession(token=token, refresh_token=refresh_token, on_logout=on_logout)
    client = CrmApiClient(
        base_url=BASE_URL,
        session=session,
        timeout=5,
        transport=httpx.MockTransport(handler),
    )
    return RemoteGateway(client)


class TestRequests:
    """Basic request shaping and decoding."""

    @pytest.mark.asyncio
    async def test_sends_bearer_token_and_json(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": "7", **seen["body"]})

        gateway = make_gateway(handler)
        created = await gateway.contacts.create({"name": "Jane Doe"})

        assert seen["auth"] == "Bearer tok-1"
        assert seen["url"] == f"{BASE_URL}/contacts"
        assert seen["body"] == {"name": "Jane Doe"}
        assert created["id"] == "7"

    @pytest.mark.asyncio
    async def test_no_auth_header_without_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=[])

        gateway = make_gateway(handler, token="", refresh_token="")
        assert await gateway.tasks.list() == []
        assert seen["auth"] is None

    @pytest.mark.asyncio
    async def test_empty_body_decodes_to_none(self):
        gateway = make_gateway(lambda request: httpx.Response(204))
        assert await gateway.contacts.delete("7") is None

    @pytest.mark.asyncio
    async def test_text_body_returned_as_text(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="BEGIN:VCARD", headers={"content-type": "text/vcard"})

        gateway = make_gateway(handler)
        assert await gateway.contacts.export_vcard("7") == "BEGIN:VCARD"

    @pytest.mark.asyncio
    async def test_bulk_tags_endpoint(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=[{"id": "1", "tags": ["vip"]}])

        gateway = make_gateway(handler)
        result = await gateway.contacts.bulk_add_tags(["1"], ["vip"])

        assert seen["path"] == "/api/contacts/bulk/tags"
        assert seen["body"] == {"ids": ["1"], "tags": ["vip"]}
        assert result[0]["tags"] == ["vip"]

    def test_unknown_kind_raises(self):
        gateway = make_gateway(lambda request: httpx.Response(200))
        with pytest.raises(ValueError):
            gateway.resource("invoice")


class TestErrors:
    """Error translation at the gateway boundary."""

    @pytest.mark.asyncio
    async def test_rejection_carries_server_message(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"message": "Email already in use"})

        gateway = make_gateway(handler)
        with pytest.raises(RequestRejected) as exc_info:
            await gateway.contacts.create({"name": "Jane"})

        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Email already in use"

    @pytest.mark.asyncio
    async def test_rejection_without_message_uses_default(self):
        gateway = make_gateway(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(RequestRejected) as exc_info:
            await gateway.contacts.list()

        assert exc_info.value.message == "Request failed"

    @pytest.mark.asyncio
    async def test_not_found_flag(self):
        gateway = make_gateway(lambda request: httpx.Response(404, json={"message": "Not found"}))
        with pytest.raises(RequestRejected) as exc_info:
            await gateway.contacts.get("99")

        assert exc_info.value.is_not_found

    @pytest.mark.asyncio
    async def test_connect_error_is_network_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        gateway = make_gateway(handler)
        with pytest.raises(NetworkFailure):
            await gateway.contacts.list()

    @pytest.mark.asyncio
    async def test_timeout_is_network_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        gateway = make_gateway(handler)
        with pytest.raises(NetworkFailure):
            await gateway.contacts.update("1", {"name": "x"})


class TestAuthRefresh:
    """401 handling."""

    @pytest.mark.asyncio
    async def test_refresh_then_retry_once(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append((request.method, request.url.path, request.headers.get("Authorization")))
            if request.url.path == "/api/auth/refresh":
                assert json.loads(request.content) == {"refreshToken": "ref-1"}
                return httpx.Response(200, json={"token": "tok-2", "refreshToken": "ref-2"})
            if request.headers.get("Authorization") == "Bearer tok-1":
                return httpx.Response(401, json={"message": "expired"})
            return httpx.Response(200, json=[{"id": "1", "name": "Jane"}])

        gateway = make_gateway(handler)
        contacts = await gateway.contacts.list()

        assert contacts == [{"id": "1", "name": "Jane"}]
        assert [path for _, path, _ in calls] == ["/api/contacts", "/api/auth/refresh", "/api/contacts"]
        assert calls[-1][2] == "Bearer tok-2"
        assert gateway.session.token == "tok-2"
        assert gateway.session.refresh_token == "ref-2"

    @pytest.mark.asyncio
    async def test_failed_refresh_logs_out(self):
        logged_out = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/auth/refresh":
                return httpx.Response(401, json={"message": "refresh expired"})
            return httpx.Response(401, json={"message": "expired"})

        gateway = make_gateway(handler, on_logout=lambda: logged_out.append(True))
        with pytest.raises(AuthExpired) as exc_info:
            await gateway.contacts.list()

        assert exc_info.value.status_code == 401
        assert logged_out == [True]
        assert gateway.session.token is None
        assert gateway.session.refresh_token is None

    @pytest.mark.asyncio
    async def test_second_401_after_refresh_is_not_retried_again(self):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path == "/api/auth/refresh":
                return httpx.Response(200, json={"token": "tok-2"})
            return httpx.Response(401)

        gateway = make_gateway(handler)
        with pytest.raises(AuthExpired):
            await gateway.tasks.list()

        assert paths == ["/api/tasks", "/api/auth/refresh", "/api/tasks"]

    @pytest.mark.asyncio
    async def test_no_refresh_token_logs_out_immediately(self):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(401)

        gateway = make_gateway(handler, refresh_token="")
        with pytest.raises(AuthExpired):
            await gateway.contacts.list()

        assert paths == ["/api/contacts"]


class TestPing:
    """Connectivity probe."""

    @pytest.mark.asyncio
    async def test_any_http_answer_is_online(self):
        gateway = make_gateway(lambda request: httpx.Response(401))
        assert await gateway.ping() is True

    @pytest.mark.asyncio
    async def test_transport_error_is_offline(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        gateway = make_gateway(handler)
        assert await gateway.ping() is False


class TestRefreshFailures:
    """Refresh calls that never produce a usable session."""

    @pytest.mark.asyncio
    async def test_refresh_connection_error_is_network_failure(self):
        logged_out = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/auth/refresh":
                raise httpx.ConnectError("Connection refused", request=request)
            return httpx.Response(401, json={"message": "expired"})

        gateway = make_gateway(handler, on_logout=lambda: logged_out.append(True))
        with pytest.raises(NetworkFailure):
            await gateway.contacts.update("1", {"name": "Jane"})

        assert logged_out == []
        assert gateway.session.token == "tok-1"
        assert gateway.session.refresh_token == "ref-1"

    @pytest.mark.asyncio
    async def test_refresh_timeout_is_network_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/auth/refresh":
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(401)

        gateway = make_gateway(handler)
        with pytest.raises(NetworkFailure):
            await gateway.contacts.list()

        assert gateway.session.token == "tok-1"

    @pytest.mark.asyncio
    async def test_refresh_without_token_logs_out(self):
        logged_out = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/auth/refresh":
                return httpx.Response(200, json={"error": "nope"})
            return httpx.Response(401)

        gateway = make_gateway(handler, on_logout=lambda: logged_out.append(True))
        with pytest.raises(AuthExpired):
            await gateway.contacts.list()

        assert logged_out == [True]
        assert gateway.session.token is None

    @pytest.mark.asyncio
    async def test_refresh_with_non_json_body_logs_out(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/auth/refresh":
                return httpx.Response(200, text="<html>ok</html>")
            return httpx.Response(401)

        gateway = make_gateway(handler)
        with pytest.raises(AuthExpired):
            await gateway.tasks.list()

        assert gateway.session.refresh_token is None


def _record(seen: dict):
    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        body = None
        if request.content:
            if "json" in request.headers.get("content-type", ""):
                body = json.loads(request.content)
            else:
                body = request.content.decode()
        seen["body"] = body
        return httpx.Response(200, json={})
    return handler


PASS_THROUGH_CALLS = [
    # (call, method, path, params, body)
    (lambda g: g.contacts.bulk_update(["1", "2"], {"company": "Acme"}),
     "PUT", "/api/contacts/bulk", {}, {"ids": ["1", "2"], "company": "Acme"}),
    (lambda g: g.contacts.search("jane", ["vip", "lead"]),
     "GET", "/api/contacts/search", {"q": "jane", "tags": "vip,lead"}, None),
    (lambda g: g.contacts.export_csv(), "GET", "/api/contacts/export/csv", {}, None),
    (lambda g: g.contacts.import_csv("name\nJane"),
     "POST", "/api/contacts/import/csv", {}, "name\nJane"),
    (lambda g: g.contacts.export_all_vcard(), "GET", "/api/contacts/export/vcard", {}, None),
    (lambda g: g.contacts.find_duplicates(), "GET", "/api/contacts/duplicates", {}, None),
    (lambda g: g.contacts.merge("1", ["2", "3"]),
     "POST", "/api/contacts/merge", {}, {"primaryId": "1", "mergeIds": ["2", "3"]}),
    (lambda g: g.tasks.complete("5"), "POST", "/api/tasks/5/complete", {}, None),
    (lambda g: g.tasks.stats(), "GET", "/api/tasks/stats", {}, None),
    (lambda g: g.tasks.active(), "GET", "/api/tasks/active", {}, None),
    (lambda g: g.tasks.overdue(), "GET", "/api/tasks/overdue", {}, None),
    (lambda g: g.tasks.due_today(), "GET", "/api/tasks/today", {}, None),
    (lambda g: g.calendar.range("2024-05-01", "2024-05-31"),
     "GET", "/api/calendar/range", {"start": "2024-05-01", "end": "2024-05-31"}, None),
    (lambda g: g.calendar.upcoming(5), "GET", "/api/calendar/upcoming", {"limit": "5"}, None),
    (lambda g: g.calendar.today(), "GET", "/api/calendar/today", {}, None),
    (lambda g: g.calendar.cancel("9"), "POST", "/api/calendar/9/cancel", {}, None),
    (lambda g: g.calendar.complete("9", "done"),
     "POST", "/api/calendar/9/complete", {}, {"notes": "done"}),
    (lambda g: g.calendar.export_ics(), "GET", "/api/calendar/export", {}, None),
    (lambda g: g.calendar.import_ics("BEGIN:VCALENDAR"),
     "POST", "/api/calendar/import", {}, "BEGIN:VCALENDAR"),
    (lambda g: g.groups.contacts("4"), "GET", "/api/groups/4/contacts", {}, None),
    (lambda g: g.groups.add_contact("4", "1"), "POST", "/api/groups/4/contacts/1", {}, None),
    (lambda g: g.groups.remove_contact("4", "1"), "DELETE", "/api/groups/4/contacts/1", {}, None),
    (lambda g: g.dashboard_stats(), "GET", "/api/dashboard/stats", {}, None),
    (lambda g: g.meetings_chart(), "GET", "/api/dashboard/meetings-chart", {}, None),
    (lambda g: g.medium_breakdown(), "GET", "/api/dashboard/medium-breakdown", {}, None),
    (lambda g: g.contacts_over_time("week"),
     "GET", "/api/dashboard/contacts-over-time", {"period": "week"}, None),
    (lambda g: g.recent_activity(5), "GET", "/api/activity", {"limit": "5"}, None),
    (lambda g: g.contact_activity("1", 10), "GET", "/api/activity/contact/1", {"limit": "10"}, None),
    (lambda g: g.reminders(), "GET", "/api/reminders", {}, None),
    (lambda g: g.reminders(pending_only=True), "GET", "/api/reminders/pending", {}, None),
    (lambda g: g.dismiss_reminder("7"), "PUT", "/api/reminders/7/dismiss", {}, None),
    (lambda g: g.search("jane", 5), "GET", "/api/search", {"q": "jane", "limit": "5"}, None),
]


class TestPassThroughCalls:
    """Bulk, report and import/export endpoints."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("call,method,path,params,body", PASS_THROUGH_CALLS)
    async def test_request_shape(self, call, method, path, params, body):
        seen = {}
        gateway = make_gateway(_record(seen))

        await call(gateway)

        assert seen["method"] == method
        assert seen["path"] == path
        assert seen["params"] == params
        assert seen["body"] == body

    @pytest.mark.asyncio
    async def test_import_sends_text_content_type(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["content_type"] = request.headers.get("content-type")
            return httpx.Response(200, json=[{"id": "1"}])

        gateway = make_gateway(handler)
        imported = await gateway.contacts.import_csv("name\nJane")

        assert seen["content_type"] == "text/csv"
        assert imported == [{"id": "1"}]
