"""
Health, directory and app-level behaviour tests.
"""


# ═════════════════════════════════════════════════════════════════════════
# HEALTH
# ═════════════════════════════════════════════════════════════════════════

class TestHealth:
    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json() == {"status": "ok"}

    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "ok"
        assert data["checks"]["bpm_engine"]["engine"] == "EmbeddedBpmEngine"
        assert data["checks"]["attachments"]["status"] == "not_created"

    def test_live_with_attachment_root(self, client, attachment_root):
        attachment_root.mkdir(parents=True)
        data = client.get("/api/v1/health/live").get_json()
        assert data["checks"]["attachments"]["status"] == "ok"

    def test_request_id_header(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "abc-123"})
        assert res.headers["X-Request-ID"] == "abc-123"
        assert "X-Request-Duration-Ms" in res.headers


# ═════════════════════════════════════════════════════════════════════════
# DIRECTORY
# ═════════════════════════════════════════════════════════════════════════

class TestDirectoryAPI:
    def test_get_user(self, client, org):
        res = client.get(f"/api/v1/directory/users/{org['developer'].id}")
        assert res.status_code == 200
        data = res.get_json()
        assert data["email"] == "developer@company.com"
        assert data["manager_id"] == org["it.manager"].id

    def test_unknown_user(self, client, org):
        res = client.get("/api/v1/directory/users/999")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_department_tree(self, client, org):
        tree = client.get("/api/v1/directory/departments/tree").get_json()
        by_name = {d["name"]: d for d in tree}
        assert by_name["IT"]["manager_id"] == org["it.manager"].id
        assert by_name["IT"]["children"] == []

    def test_positions_most_senior_first(self, client, org):
        positions = client.get("/api/v1/directory/positions").get_json()
        assert positions[0]["code"] == "CEO"
        assert positions[-1]["level"] == 10

    def test_seed_is_idempotent(self, org):
        from backoffice.services.directory_service import seed_directory

        assert seed_directory() == 0


# ═════════════════════════════════════════════════════════════════════════
# APP-LEVEL HANDLERS
# ═════════════════════════════════════════════════════════════════════════

class TestAppHandlers:
    def test_unknown_route(self, client):
        res = client.get("/api/v1/nope")
        assert res.status_code == 404
        assert res.get_json()["path"] == "/api/v1/nope"

    def test_method_not_allowed(self, client):
        assert client.delete("/api/v1/health/ready").status_code == 405

    def test_non_json_body_rejected(self, client):
        res = client.post("/api/v1/workflow/instances", data="<xml/>", content_type="application/xml")
        assert res.status_code == 415
