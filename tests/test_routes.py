import json

import httpx
import pytest
from fastapi.testclient import TestClient

from headscale_admin.main import create_app
from headscale_admin.security import SESSION_COOKIE_NAME

from conftest import ADMIN_PASSWORD, session_cookie

NODE = {
    "id": "1",
    "name": "alpha",
    "online": True,
    "lastSeen": "2024-05-01T12:00:00Z",
    "user": {"id": "10", "name": "alice"},
}


@pytest.fixture
def services(make_services):
    return make_services()


@pytest.fixture
def client(services):
    app = create_app(services.settings, services=services, configure_logs=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin(client, services):
    client.cookies.update(session_cookie(services))
    return client


def test_health_and_version_are_public(client):
    assert client.get("/health").json()["status"] == "ok"
    assert client.get("/version").json()["app"] == "Headscale Admin"


def test_metrics_exposition_is_public(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "headscale_admin" in response.text


def test_html_routes_redirect_to_login(client):
    response = client.get("/nodes", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/auth/login?next=%2Fnodes"


@pytest.mark.parametrize("path", ["/api/stats", "/api/nodes", "/api/realtime"])
def test_api_routes_reject_without_session(client, path):
    response = client.get(path)

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_forged_session_cookie_is_rejected(client):
    client.cookies.set(SESSION_COOKIE_NAME, "forged.token")

    assert client.get("/api/stats").status_code == 401


def test_login_sets_session_cookie(client):
    page = client.get("/auth/login")
    assert page.status_code == 200
    assert "Sign In" in page.text

    response = client.post(
        "/auth/login",
        data={"username": "admin", "password": ADMIN_PASSWORD, "next": "/nodes"},
        follow_redirects=False,
    )

    assert response.status_code == 303
    assert response.headers["location"] == "/nodes"
    assert SESSION_COOKIE_NAME in response.cookies


def test_login_ignores_offsite_next(client):
    response = client.post(
        "/auth/login",
        data={"username": "admin", "password": ADMIN_PASSWORD, "next": "//evil.example"},
        follow_redirects=False,
    )

    assert response.headers["location"].startswith("/?")


def test_login_rate_limit_locks_out(client):
    for _ in range(5):
        response = client.post("/auth/login", data={"username": "admin", "password": "bad"})
        assert response.status_code == 401

    blocked = client.post("/auth/login", data={"username": "admin", "password": ADMIN_PASSWORD})

    assert blocked.status_code == 429
    assert "Too many login attempts" in blocked.text


def test_logout_clears_cookie(admin):
    response = admin.get("/auth/logout", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/auth/login"
    assert 'headscale_admin_session=""' in response.headers["set-cookie"]


def test_api_stats_reports_counts_and_health(admin, control_api):
    control_api.routes[("GET", "/api/v1/node")] = (200, {"nodes": [NODE, {"id": "2"}]})
    control_api.routes[("GET", "/api/v1/user")] = (200, [{"id": "10", "name": "alice"}])

    plain = admin.get("/api/stats").json()
    detailed = admin.get("/api/stats?health=true").json()

    assert plain == {"totalNodes": 2, "onlineNodes": 1, "totalUsers": 1, "totalPreauthKeys": 0}
    assert detailed["health"] == {"nodes": True, "users": True, "preauthKeys": False}


def test_api_nodes_returns_iso_timestamps(admin, control_api):
    control_api.routes[("GET", "/api/v1/node")] = (200, [NODE])

    nodes = admin.get("/api/nodes").json()

    assert nodes[0]["lastSeen"] == "2024-05-01T12:00:00Z"
    assert nodes[0]["createdAt"] is None
    assert nodes[0]["user"] == {"id": "10", "name": "alice"}


@pytest.mark.parametrize(
    ("upstream", "status", "kind"),
    [
        ((404, {"message": "record not found"}), 404, "not_found"),
        ((401, {"message": "bad key"}), 502, "unauthorized"),
        ((500, {"message": "boom"}), 502, "upstream_fault"),
        ((0, httpx.ConnectError("refused")), 503, "unreachable"),
    ],
)
def test_api_node_maps_upstream_errors(admin, control_api, upstream, status, kind):
    control_api.routes[("GET", "/api/v1/node/9")] = upstream

    response = admin.get("/api/nodes/9")

    assert response.status_code == status
    assert response.json()["kind"] == kind


def test_api_node_with_malformed_body_is_upstream_fault(admin, control_api):
    control_api.routes[("GET", "/api/v1/node/7")] = (200, {"node": {"name": "x"}})

    response = admin.get("/api/nodes/7")

    assert response.status_code == 502
    assert response.json()["kind"] == "upstream_fault"


def test_api_user_detail_not_found(admin):
    response = admin.get("/api/users/42")

    assert response.status_code == 404
    assert response.json() == {"error": "User not found"}


def test_api_user_detail_combines_calls(admin, control_api):
    control_api.routes[("GET", "/api/v1/user/10")] = (200, {"user": {"id": "10", "name": "alice"}})
    control_api.routes[("GET", "/api/v1/user/10/node")] = (200, {"nodes": [NODE]})

    body = admin.get("/api/users/10").json()

    assert body["user"]["name"] == "alice"
    assert [node["id"] for node in body["nodes"]] == ["1"]
    assert body["preauthKeys"] == []


def test_api_status_passes_through(admin, control_api):
    control_api.routes[("GET", "/api/v1/status")] = (200, {"version": "0.23.0"})

    assert admin.get("/api/status").json() == {"version": "0.23.0"}


def test_api_metrics_requires_query(admin):
    response = admin.get("/api/metrics")

    assert response.status_code == 400
    assert response.json() == {"error": "Query parameter is required"}


def test_api_metrics_without_service_is_unavailable(admin):
    assert admin.get("/api/metrics?query=up").status_code == 503


def test_api_metrics_passes_through(make_services):
    def handler(request):
        return httpx.Response(200, json={"status": "success", "query": request.url.params["query"]})

    services = make_services(metrics_handler=handler, metrics_api_url="http://prometheus.test")
    app = create_app(services.settings, services=services, configure_logs=False)
    with TestClient(app) as client:
        client.cookies.update(session_cookie(services))
        body = client.get("/api/metrics", params={"query": "up"}).json()

    assert body == {"status": "success", "query": "up"}


def test_dashboard_renders_snapshot(admin, control_api):
    control_api.routes[("GET", "/api/v1/node")] = (200, [NODE])

    response = admin.get("/?notice=welcome")

    assert response.status_code == 200
    assert 'data-stat="totalNodes">1<' in response.text
    assert "Welcome back!" in response.text
    assert "could not be loaded" in response.text


def test_status_page_redirects_on_failure(admin):
    response = admin.get("/status", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/?error=status_load"


def test_monitoring_page_degrades_without_metrics(admin):
    response = admin.get("/monitoring")

    assert response.status_code == 200
    assert "No metrics service is configured." in response.text


def test_nodes_page_shows_banner_when_upstream_fails(admin):
    response = admin.get("/nodes")

    assert response.status_code == 200
    assert "Failed to load nodes" in response.text
    assert "No nodes registered." in response.text


def test_node_detail_failure_redirects_with_flash(admin):
    response = admin.get("/nodes/9", follow_redirects=False)

    assert response.headers["location"] == "/nodes?error=node_load"


def test_malformed_entity_pages_redirect_with_flash(admin, control_api):
    control_api.routes[("GET", "/api/v1/node/7")] = (200, {"node": {"name": "x"}})
    control_api.routes[("GET", "/api/v1/user/7")] = (200, {"user": {"name": "x"}})

    node_page = admin.get("/nodes/7", follow_redirects=False)
    user_edit = admin.get("/users/7/edit", follow_redirects=False)

    assert node_page.status_code == 303
    assert node_page.headers["location"] == "/nodes?error=node_load"
    assert user_edit.status_code == 303
    assert user_edit.headers["location"] == "/users?error=user_edit_load"


def test_node_rename_forwards_trimmed_name(admin, control_api):
    control_api.routes[("POST", "/api/v1/node/1/rename")] = (200, {"node": NODE})

    response = admin.post("/nodes/1/rename", data={"name": "  edge "}, follow_redirects=False)

    assert response.headers["location"] == "/nodes/1?notice=node_renamed"
    assert json.loads(control_api.calls[-1].content) == {"name": "edge"}


def test_node_rename_blank_name_never_reaches_upstream(admin, control_api):
    response = admin.post("/nodes/1/rename", data={"name": "  "}, follow_redirects=False)

    assert response.headers["location"] == "/nodes/1?error=node_name_required"
    assert control_api.paths("POST") == []


def test_node_tags_update_failure_returns_to_edit(admin, control_api):
    response = admin.post("/nodes/1", data={"tags": "tag:a"}, follow_redirects=False)

    assert response.headers["location"] == "/nodes/1/edit?error=node_update"
    assert json.loads(control_api.calls[-1].content) == {"tags": ["tag:a"]}


def test_node_delete_redirects_to_list(admin, control_api):
    control_api.routes[("DELETE", "/api/v1/node/1")] = (200, {})

    response = admin.post("/nodes/1/delete", follow_redirects=False)

    assert response.headers["location"] == "/nodes?notice=node_deleted"


def test_user_create_form_is_not_treated_as_id(admin, control_api):
    response = admin.get("/users/create")

    assert response.status_code == 200
    assert "Create New User" in response.text
    assert control_api.calls == []


def test_user_create_requires_name(admin, control_api):
    response = admin.post("/users", data={"name": ""}, follow_redirects=False)

    assert response.headers["location"] == "/users/create?error=user_name_required"
    assert control_api.calls == []


def test_user_show_missing_redirects(admin):
    response = admin.get("/users/42", follow_redirects=False)

    assert response.headers["location"] == "/users?error=user_not_found"


def test_user_show_renders_keys(admin, control_api):
    control_api.routes[("GET", "/api/v1/user/10")] = (200, {"user": {"id": "10", "name": "alice"}})
    control_api.routes[("GET", "/api/v1/user/10/preauthkey")] = (
        200,
        {"preAuthKeys": [{"id": "1", "key": "deadbeef", "reusable": True}]},
    )

    response = admin.get("/users/10")

    assert response.status_code == 200
    assert "deadbeef" in response.text


def test_preauth_key_form_defaults(admin, control_api):
    control_api.routes[("POST", "/api/v1/preauthkey")] = (200, {"preAuthKey": {"id": "1"}})

    response = admin.post(
        "/users/10/preauthkey",
        data={"expiration": "", "reusable": "true", "tags": "tag:ci"},
        follow_redirects=False,
    )

    assert response.headers["location"] == "/users/10?notice=preauthkey_created"
    assert json.loads(control_api.calls[-1].content) == {
        "user": "10",
        "expiration": "24h",
        "reusable": True,
        "tags": ["tag:ci"],
    }


def test_change_password_flow(admin):
    mismatch = admin.post(
        "/auth/change-password",
        data={
            "current_password": ADMIN_PASSWORD,
            "new_password": "abcdef",
            "confirm_password": "abcdeg",
        },
    )
    assert mismatch.status_code == 400
    assert "New passwords do not match." in mismatch.text

    response = admin.post(
        "/auth/change-password",
        data={
            "current_password": ADMIN_PASSWORD,
            "new_password": "abcdef",
            "confirm_password": "abcdef",
        },
        follow_redirects=False,
    )
    assert response.headers["location"] == "/?notice=password_changed"

    admin.cookies.clear()
    login = admin.post(
        "/auth/login",
        data={"username": "admin", "password": "abcdef"},
        follow_redirects=False,
    )
    assert login.status_code == 303


def test_unknown_page_renders_not_found(admin):
    response = admin.get("/does-not-exist")

    assert response.status_code == 404
    assert "Page Not Found" in response.text


def test_responses_carry_request_id(client):
    response = client.get("/health", headers={"X-Request-ID": "abc123"})

    assert response.headers["X-Request-ID"] == "abc123"
