"""
Tests for sandbox tool routes and their error mapping.
"""

from unittest.mock import AsyncMock, patch

import pytest

from app.exceptions import (
    DevServerPortConflictError,
    ProjectNotFoundError,
    SandboxCommandError,
    SandboxNotFoundError,
    SandboxPathNotFoundError,
    SandboxUnavailableError,
)
from app.models.api import (
    ExploreResponse,
    FileNode,
    LogsResponse,
    PreviewUrlResponse,
    RestartServerResponse,
    RouteInfo,
    SandboxStartResponse,
    SaveFileResponse,
    SearchHit,
    ViewFileResponse,
)

SERVICE = "app.api.sandbox_routes.SandboxToolsService"


@pytest.fixture
def tools():
    with patch(SERVICE) as service_cls:
        service = service_cls.return_value
        service.provider.configured = True
        yield service


class TestConfiguration:
    @pytest.mark.asyncio
    async def test_missing_daytona_key(self, async_client, override_db, tools):
        tools.provider.configured = False
        response = await async_client.post("/api/sandbox/start", json={"sandboxId": "sb-1"})
        assert response.status_code == 500
        assert response.json() == {"error": "Missing DAYTONA_API_KEY"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("path", "body"),
        [
            ("/api/sandbox/start", {}),
            ("/api/view-file", {"sandboxId": "sb-1"}),
            ("/api/save-file", {"sandboxId": "sb-1", "filePath": "a.ts"}),
            ("/api/search-sandbox", {"sandboxId": "sb-1"}),
            ("/api/explore-sandbox", {}),
            ("/api/get-logs", {}),
            ("/api/get-preview-url", {}),
            ("/api/restart-server", {"devPort": 3000}),
        ],
    )
    async def test_required_fields(self, async_client, override_db, tools, path, body):
        response = await async_client.post(path, json=body)
        assert response.status_code == 400


class TestStart:
    @pytest.mark.asyncio
    async def test_start(self, async_client, override_db, tools):
        tools.start_sandbox = AsyncMock(
            return_value=SandboxStartResponse(
                success=True, message="Sandbox started successfully", sandbox_id="sb-1"
            )
        )
        response = await async_client.post("/api/sandbox/start", json={"sandboxId": "sb-1"})
        assert response.json() == {
            "success": True,
            "message": "Sandbox started successfully",
            "sandboxId": "sb-1",
        }

    @pytest.mark.asyncio
    async def test_unknown_sandbox(self, async_client, override_db, tools):
        tools.start_sandbox = AsyncMock(side_effect=SandboxNotFoundError("sb-1"))
        response = await async_client.post("/api/sandbox/start", json={"sandboxId": "sb-1"})
        assert response.status_code == 404
        assert response.json() == {"error": "Sandbox sb-1 not found"}


class TestFileRoutes:
    """Tests for view, save, search and explore."""

    @pytest.mark.asyncio
    async def test_view(self, async_client, override_db, tools):
        tools.view_file = AsyncMock(
            return_value=ViewFileResponse(content="x", path="app/page.tsx", stats="-rw 1")
        )
        response = await async_client.post(
            "/api/view-file", json={"sandboxId": "sb-1", "filePath": "app/page.tsx"}
        )
        assert response.json() == {"content": "x", "path": "app/page.tsx", "stats": "-rw 1"}
        tools.view_file.assert_awaited_once_with("sb-1", "app/page.tsx", None)

    @pytest.mark.asyncio
    async def test_view_missing_lists_tried(self, async_client, override_db, tools):
        tools.view_file = AsyncMock(
            side_effect=SandboxPathNotFoundError("File not found: a", tried=["a", "./a"])
        )
        response = await async_client.post(
            "/api/view-file", json={"sandboxId": "sb-1", "filePath": "a"}
        )
        assert response.status_code == 404
        assert response.json() == {"error": "File not found: a", "tried": ["a", "./a"]}

    @pytest.mark.asyncio
    async def test_save_empty_content_allowed(self, async_client, override_db, tools):
        tools.save_file = AsyncMock(return_value=SaveFileResponse(ok=True, path="a.ts"))
        response = await async_client.post(
            "/api/save-file", json={"sandboxId": "sb-1", "filePath": "a.ts", "content": ""}
        )
        assert response.json() == {"ok": True, "path": "a.ts"}

    @pytest.mark.asyncio
    async def test_save_command_failure(self, async_client, override_db, tools):
        tools.save_file = AsyncMock(
            side_effect=SandboxCommandError("Failed to write file", "disk full")
        )
        response = await async_client.post(
            "/api/save-file", json={"sandboxId": "sb-1", "filePath": "a.ts", "content": "x"}
        )
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to write file", "details": "disk full"}

    @pytest.mark.asyncio
    async def test_search(self, async_client, override_db, tools):
        tools.search = AsyncMock(return_value=[SearchHit(file="a.ts", line=2, preview="x")])
        response = await async_client.post(
            "/api/search-sandbox", json={"sandboxId": "sb-1", "query": "x", "maxResults": 5}
        )
        assert response.json() == {"results": [{"file": "a.ts", "line": 2, "preview": "x"}]}
        tools.search.assert_awaited_once_with("sb-1", "x", 5, None)

    @pytest.mark.asyncio
    async def test_search_limit_validated(self, async_client, override_db, tools):
        response = await async_client.post(
            "/api/search-sandbox", json={"sandboxId": "sb-1", "query": "x", "maxResults": 0}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_explore(self, async_client, override_db, tools):
        tools.explore = AsyncMock(
            return_value=ExploreResponse(
                tree=[FileNode(name="page.tsx", path="app/page.tsx", type="file")],
                routes=[RouteInfo(path="/", file_path="page.tsx", type="page")],
                app_dir="app",
            )
        )
        response = await async_client.post("/api/explore-sandbox", json={"sandboxId": "sb-1"})
        body = response.json()
        assert body["appDir"] == "app"
        assert body["routes"] == [{"path": "/", "filePath": "page.tsx", "type": "page"}]

    @pytest.mark.asyncio
    async def test_unreachable_is_503(self, async_client, override_db, tools):
        tools.explore = AsyncMock(side_effect=SandboxUnavailableError("Daytona API unreachable"))
        response = await async_client.post("/api/explore-sandbox", json={"sandboxId": "sb-1"})
        assert response.status_code == 503
        assert response.json()["error"] == "Sandbox is not available"


class TestLogs:
    @pytest.mark.asyncio
    async def test_defaults(self, async_client, override_db, tools):
        tools.get_logs = AsyncMock(
            return_value=LogsResponse(logs="...", process_info="node", has_dev_server=True)
        )
        response = await async_client.post("/api/get-logs", json={"sandboxId": "sb-1"})
        assert response.json()["hasDevServer"] is True
        tools.get_logs.assert_awaited_once_with("sb-1", "website-project", 50)


class TestPreviewUrl:
    """Tests for preview errors and their client flags."""

    @pytest.mark.asyncio
    async def test_preview(self, async_client, override_user, tools, mock_user):
        tools.preview_url = AsyncMock(
            return_value=PreviewUrlResponse(
                preview_url="https://3000-sb.proxy", token="t", server_status="running"
            )
        )
        response = await async_client.post(
            "/api/get-preview-url", json={"sandboxId": "sb-1", "port": 3001}
        )
        assert response.json()["previewUrl"] == "https://3000-sb.proxy"
        tools.preview_url.assert_awaited_once_with("sb-1", 3001, mock_user.id)

    @pytest.mark.asyncio
    async def test_not_found(self, async_client, override_db, tools):
        tools.preview_url = AsyncMock(side_effect=SandboxNotFoundError("sb-1"))
        response = await async_client.post("/api/get-preview-url", json={"sandboxId": "sb-1"})
        assert response.status_code == 404
        body = response.json()
        assert body["sandboxNotFound"] is True
        assert body["sandboxStopped"] is False

    @pytest.mark.asyncio
    async def test_unreachable(self, async_client, override_db, tools):
        tools.preview_url = AsyncMock(side_effect=SandboxUnavailableError("down"))
        response = await async_client.post("/api/get-preview-url", json={"sandboxId": "sb-1"})
        assert response.status_code == 503
        assert response.json()["apiUnreachable"] is True

    @pytest.mark.asyncio
    async def test_stopped(self, async_client, override_db, tools):
        tools.preview_url = AsyncMock(side_effect=SandboxCommandError("could not start"))
        response = await async_client.post("/api/get-preview-url", json={"sandboxId": "sb-1"})
        assert response.status_code == 503
        assert response.json()["sandboxStopped"] is True


class TestRestartServer:
    """Tests for the dev server restart route."""

    @pytest.mark.asyncio
    async def test_restart(self, async_client, override_user, tools, mock_user):
        tools.restart_dev_server = AsyncMock(
            return_value=RestartServerResponse(
                success=True,
                preview_url="https://3042-sb.proxy",
                server_status="200",
                process_running=True,
                logs="ready",
            )
        )
        response = await async_client.post(
            "/api/restart-server",
            json={"sandboxId": "sb-1", "projectPath": "site", "devPort": 3042},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["serverStatus"] == "200"
        assert body["portConflict"] is False
        assert body["buildErrors"] == []
        tools.restart_dev_server.assert_awaited_once_with(
            "sb-1", project_path="site", dev_port=3042, user_id=mock_user.id
        )

    @pytest.mark.asyncio
    async def test_port_out_of_range(self, async_client, override_db, tools):
        response = await async_client.post(
            "/api/restart-server", json={"sandboxId": "sb-1", "devPort": 70000}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_project(self, async_client, override_db, tools):
        tools.restart_dev_server = AsyncMock(side_effect=ProjectNotFoundError("sb-1"))
        response = await async_client.post("/api/restart-server", json={"sandboxId": "sb-1"})
        assert response.status_code == 404
        assert response.json() == {
            "error": "Project not found and no devPort or projectPath provided. "
            "Cannot restart server."
        }

    @pytest.mark.asyncio
    async def test_port_conflict(self, async_client, override_db, tools):
        tools.restart_dev_server = AsyncMock(
            side_effect=DevServerPortConflictError(3042, "4321")
        )
        response = await async_client.post("/api/restart-server", json={"sandboxId": "sb-1"})

        assert response.status_code == 409
        body = response.json()
        assert body["portConflict"] is True
        assert body["logs"] == "Port 3042 blocked by process: 4321"
        assert body["error"].startswith("Port 3042 is still in use")

    @pytest.mark.asyncio
    async def test_missing_directory(self, async_client, override_db, tools):
        tools.restart_dev_server = AsyncMock(
            side_effect=SandboxPathNotFoundError("Project path does not exist: /x", tried=["/x"])
        )
        response = await async_client.post("/api/restart-server", json={"sandboxId": "sb-1"})
        assert response.status_code == 404
        assert response.json()["tried"] == ["/x"]
