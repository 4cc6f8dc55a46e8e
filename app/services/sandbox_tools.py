"""
Sandbox Tools - file, search, log, preview and dev server helpers run inside
project sandboxes.

Everything here shells out through the Daytona process API. Paths are quoted
with shlex before they reach the shell.
"""

import asyncio
import base64
import re
import shlex
from uuid import UUID

import httpx
from daytona import AsyncSandbox
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Project
from app.exceptions import (
    DevServerPortConflictError,
    ProjectNotFoundError,
    SandboxCommandError,
    SandboxError,
    SandboxPathNotFoundError,
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
from app.services.projects import ProjectService, parse_uuid
from app.services.sandbox_provider import SandboxProvider, sandbox_provider

logger = get_logger(__name__)

DEFAULT_PROJECT_DIR = "website-project"
PROJECTS_DIR_NAME = "blockmind-projects"
DEFAULT_DEV_PORT = 3000
NO_DEV_SERVER = "No dev server process found"

_SEARCH_LINE = re.compile(r"^(.+?):(\d+):(.*)$")
_ROUTE_FILE = re.compile(r"(^|/)(page\.(tsx|jsx)|route\.(ts|js))$")
_NOISE = ("sh:", "not found")
_BUILD_ERROR_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"Error:.*Cannot find module",
        r"Module not found",
        r"Cannot resolve",
        r"TypeError:",
        r"SyntaxError:",
        r"ReferenceError:",
        r"Failed to compile",
        r"Build failed",
        r"Error:.*Failed to",
        r"Error:.*is not defined",
        r"Type.*is not assignable",
        r"Property.*does not exist",
        r"Cannot read propert",
        r"Unexpected token",
        r"Parsing error",
        r"Build error",
    )
)
_PORT_IN_USE_MARKERS = ("EADDRINUSE", "address already in use")
_DISK_FULL_MARKERS = ("No space left on device", "ENOSPC")
DISK_CLEANUP_PERCENT = 90
DISK_CRITICAL_PERCENT = 95


def clean_project_path(path: str) -> str:
    return re.sub(r"^/root/", "", path).lstrip("/")


def relative_project_path(db_path: str | None) -> str:
    """Project directory relative to the sandbox home, from a stored absolute path."""
    if not db_path:
        return DEFAULT_PROJECT_DIR
    parts = [part for part in db_path.split("/") if part]
    if PROJECTS_DIR_NAME in parts:
        return "/".join(parts[parts.index(PROJECTS_DIR_NAME):])
    return clean_project_path(db_path) or DEFAULT_PROJECT_DIR


def _clean_lines(output: str) -> list[str]:
    return [
        line.strip()
        for line in output.strip().splitlines()
        if line.strip() and not any(noise in line for noise in _NOISE)
    ]


def parse_search_output(output: str, limit: int) -> list[SearchHit]:
    """Parse `file:line:text` lines as printed by rg -n / grep -n."""
    hits: list[SearchHit] = []
    for line in _clean_lines(output):
        match = _SEARCH_LINE.match(line)
        if not match:
            continue
        file = re.sub(r"^\./", "", match.group(1)).strip()
        if not file:
            continue
        hits.append(SearchHit(file=file, line=int(match.group(2)), preview=match.group(3).strip()))
        if len(hits) >= limit:
            break
    return hits


def _strip_prefix(path: str, project_dir: str, app_dir: str) -> str:
    path = re.sub(r"^\./", "", path.strip())
    if path.startswith(project_dir + "/"):
        path = path[len(project_dir) + 1:]
    if path != app_dir and path.startswith(app_dir + "/"):
        path = path[len(app_dir) + 1:]
    return path


def build_file_tree(app_dir: str, files: list[str], dirs: list[str]) -> list[FileNode]:
    """
    Nested tree from flat `find` output, relative to app_dir.

    Node paths keep the app_dir prefix so the client can open them directly.
    """
    file_set = set(files)
    roots: list[FileNode] = []
    nodes: dict[str, FileNode] = {}

    for relative in sorted(file_set | set(dirs)):
        if not relative or relative == app_dir:
            continue
        parts = [part for part in relative.split("/") if part]
        for depth in range(len(parts)):
            current = "/".join(parts[: depth + 1])
            if current in nodes:
                continue
            is_file = current in file_set
            node = FileNode(
                name=parts[depth],
                path=f"{app_dir}/{current}",
                type="file" if is_file else "directory",
                children=None if is_file else [],
            )
            nodes[current] = node
            if depth == 0:
                roots.append(node)
            else:
                parent = nodes.get("/".join(parts[:depth]))
                if parent is not None and parent.children is not None:
                    parent.children.append(node)
    return roots


def routes_from_files(app_dir: str, files: list[str]) -> list[RouteInfo]:
    """Next.js app router routes from page/route files, relative to app_dir."""
    routes: list[RouteInfo] = []
    for relative in files:
        if not _ROUTE_FILE.search(relative):
            continue
        route_dir = re.sub(r"(^|/)(page\.(tsx|jsx)|route\.(ts|js))$", "", relative)
        route_path = "/" + "/".join(part for part in route_dir.split("/") if part)
        is_api = bool(re.search(r"route\.(ts|js)$", relative))
        routes.append(
            RouteInfo(path=route_path, file_path=relative, type="api" if is_api else "page")
        )
    return routes


def resolve_project_dir(home: str, project_path: str) -> str:
    """Absolute project directory from an absolute, ~/ or home-relative path."""
    if project_path.startswith("/"):
        full = project_path
    elif project_path.startswith("~/"):
        full = home + project_path[1:]
    else:
        full = f"{home}/{project_path}"
    return re.sub(r"/+", "/", full)


def find_build_errors(logs: str) -> tuple[list[str], str | None]:
    """Build errors in dev server output, and the lines around them."""
    errors: list[str] = []
    for pattern in _BUILD_ERROR_PATTERNS:
        match = pattern.search(logs)
        if match:
            errors.append(match.group(0))
    lines = logs.splitlines()
    flagged = [
        index
        for index, line in enumerate(lines)
        if any(pattern.search(line) for pattern in _BUILD_ERROR_PATTERNS)
    ]
    if not flagged:
        return errors[:10], None

    nearby = sorted(
        {j for index in flagged for j in range(max(0, index - 1), min(len(lines), index + 2))}
    )
    return errors[:10], "\n".join(lines[j] for j in nearby[:30])


def pm2_process_name(port: int) -> str:
    return f"dev-server-{port}"


def pm2_ecosystem_config(project_dir: str, port: int) -> str:
    """PM2 app definition with restart limits, written as CommonJS."""
    return f"""module.exports = {{
  apps: [{{
    name: '{pm2_process_name(port)}',
    script: 'npm',
    args: 'run dev -- -p {port}',
    cwd: '{project_dir}',
    env: {{ PORT: '{port}', NODE_ENV: 'development' }},
    error_file: '{project_dir}/dev-server-error.log',
    out_file: '{project_dir}/dev-server.log',
    merge_logs: true,
    autorestart: true,
    watch: false,
    max_memory_restart: '1G',
    min_uptime: '10s',
    max_restarts: 5,
    restart_delay: 5000,
    kill_timeout: 5000
  }}]
}};
"""


class SandboxToolsService:
    """Project-aware operations on a sandbox."""

    def __init__(
        self,
        session: AsyncSession,
        provider: SandboxProvider | None = None,
        settle_seconds: float = 2.0,
        startup_wait_seconds: float = 10.0,
    ) -> None:
        self.session = session
        self.provider = provider or sandbox_provider
        self.settle_seconds = settle_seconds
        self.startup_wait_seconds = startup_wait_seconds

    async def project_relative_path(self, reference: str, explicit: str | None) -> str:
        if explicit:
            return clean_project_path(explicit)

        clauses = [Project.sandbox_id == reference]
        project_id = parse_uuid(reference)
        if project_id is not None:
            clauses.append(Project.id == project_id)
        result = await self.session.execute(
            select(Project.project_path)
            .where(or_(*clauses))
            .order_by(Project.created_at.desc())
            .limit(1)
        )
        return relative_project_path(result.scalars().first())

    async def _open(self, sandbox_id: str, project_path: str | None) -> tuple[AsyncSandbox, str, str]:
        """Running sandbox, its home dir, and the absolute project dir."""
        relative = await self.project_relative_path(sandbox_id, project_path)
        sandbox, _ = await self.provider.ensure_sandbox_running(sandbox_id)
        home = await self.provider.home_dir(sandbox)
        return sandbox, home, f"{home}/{relative}"

    async def start_sandbox(self, sandbox_id: str) -> SandboxStartResponse:
        _, was_started = await self.provider.ensure_sandbox_running(sandbox_id)
        message = "Sandbox started successfully" if was_started else "Sandbox is already running"
        return SandboxStartResponse(success=True, message=message, sandbox_id=sandbox_id)

    async def view_file(
        self, sandbox_id: str, file_path: str, project_path: str | None = None
    ) -> ViewFileResponse:
        """
        Read a file from the project directory.

        Raises:
            SandboxPathNotFoundError: If no path variant exists or it can't be read
        """
        sandbox, _, project_dir = await self._open(sandbox_id, project_path)
        cleaned = file_path.strip().splitlines()[0].strip() if file_path.strip() else file_path
        candidates = list(
            dict.fromkeys([cleaned, re.sub(r"^\./", "", cleaned), cleaned.lstrip("/")])
        )

        actual: str | None = None
        for candidate in candidates:
            check = await self.provider.exec(
                sandbox, f"test -f {shlex.quote(candidate)} && echo exists", cwd=project_dir
            )
            if check.output.strip() == "exists":
                actual = candidate
                break
        if actual is None:
            raise SandboxPathNotFoundError(f"File not found: {file_path}", tried=candidates)

        contents = await self.provider.exec(sandbox, f"cat {shlex.quote(actual)}", cwd=project_dir)
        if not contents.ok:
            raise SandboxPathNotFoundError(f"Failed to read file: {actual}")

        stats = await self.provider.exec(
            sandbox, f"ls -lh {shlex.quote(actual)} 2>&1 | head -1", cwd=project_dir
        )
        return ViewFileResponse(content=contents.output, path=actual, stats=stats.output.strip())

    async def save_file(
        self, sandbox_id: str, file_path: str, content: str, project_path: str | None = None
    ) -> SaveFileResponse:
        sandbox, home, project_dir = await self._open(sandbox_id, project_path)
        target = re.sub(r"^\./", "", file_path.lstrip("/"))
        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        command = (
            f"cd {shlex.quote(project_dir)} && "
            f"mkdir -p \"$(dirname {shlex.quote(target)})\" && "
            f"printf '%s' {shlex.quote(encoded)} | base64 -d > {shlex.quote(target)}"
        )
        result = await self.provider.exec(sandbox, command, cwd=home)
        if not result.ok:
            logger.error("sandbox_save_file_failed", sandbox_id=sandbox_id, path=target)
            raise SandboxCommandError("Failed to write file", result.output)

        logger.info("sandbox_file_saved", sandbox_id=sandbox_id, path=target, size=len(content))
        return SaveFileResponse(ok=True, path=target)

    async def search(
        self,
        sandbox_id: str,
        query: str,
        max_results: int = 100,
        project_path: str | None = None,
    ) -> list[SearchHit]:
        """Search project files with ripgrep, falling back to grep."""
        sandbox, home, project_dir = await self._open(sandbox_id, project_path)
        quoted = shlex.quote(query)
        command = (
            f"cd {shlex.quote(project_dir)} && "
            f"(command -v rg >/dev/null 2>&1 && "
            f"rg -n --no-heading --color=never -S --max-count {max_results} {quoted} . 2>/dev/null"
            f" || grep -Rin -m {max_results} -E {quoted} . 2>/dev/null) || echo ''"
        )
        result = await self.provider.exec(sandbox, command, cwd=home)
        return parse_search_output(result.output, max_results)

    async def explore(self, sandbox_id: str, project_path: str | None = None) -> ExploreResponse:
        """
        File tree and routes of a Next.js project.

        Raises:
            SandboxPathNotFoundError: If the project or its app directory is missing
        """
        sandbox, home, project_dir = await self._open(sandbox_id, project_path)

        check = await self.provider.exec(
            sandbox, f"test -d {shlex.quote(project_dir)} && echo exists", cwd=home
        )
        if check.output.strip() != "exists":
            logger.warning("sandbox_project_dir_missing", sandbox_id=sandbox_id, path=project_dir)
            raise SandboxPathNotFoundError("Project directory not found", tried=[project_dir])

        app_check = await self.provider.exec(
            sandbox,
            "test -d app && echo app || (test -d src/app && echo src/app) || echo missing",
            cwd=project_dir,
        )
        app_lines = _clean_lines(app_check.output)
        app_dir = app_lines[0] if app_lines else "missing"
        if app_dir not in ("app", "src/app"):
            raise SandboxPathNotFoundError("No app directory found")

        files_out = await self.provider.exec(
            sandbox, f"find {app_dir} -type f 2>/dev/null | sort", cwd=project_dir
        )
        dirs_out = await self.provider.exec(
            sandbox, f"find {app_dir} -type d 2>/dev/null | sort", cwd=project_dir
        )
        files = [_strip_prefix(p, project_dir, app_dir) for p in _clean_lines(files_out.output)]
        dirs = [_strip_prefix(p, project_dir, app_dir) for p in _clean_lines(dirs_out.output)]

        return ExploreResponse(
            tree=build_file_tree(app_dir, files, dirs),
            routes=routes_from_files(app_dir, files),
            app_dir=app_dir,
        )

    async def get_logs(
        self, sandbox_id: str, project_path: str = DEFAULT_PROJECT_DIR, lines: int = 50
    ) -> LogsResponse:
        sandbox, _, project_dir = await self._open(sandbox_id, project_path)

        dev_log = await self.provider.exec(
            sandbox,
            f"if [ -f dev-server.log ]; then tail -{lines} dev-server.log; "
            "else echo 'No dev-server.log found'; fi",
            cwd=project_dir,
        )
        build_logs = await self.provider.exec(
            sandbox,
            "find .next -name '*.log' -type f 2>/dev/null | head -3 | "
            "while read log; do echo \"=== $log ===\"; tail -30 \"$log\"; done",
            cwd=project_dir,
        )
        process_info = await self.provider.exec(
            sandbox,
            "ps aux | grep -E 'next dev|npm run dev|node.*next' | grep -v grep "
            f"|| echo '{NO_DEV_SERVER}'",
            cwd=project_dir,
        )
        errors = await self.provider.exec(
            sandbox,
            f"tail -{lines} dev-server.log 2>/dev/null | grep -i 'error\\|404\\|fail' | tail -20",
            cwd=project_dir,
        )

        sections: list[str] = []
        if dev_log.output and "No dev-server.log found" not in dev_log.output:
            sections.append(f"=== Dev Server Log (last {lines} lines) ===\n{dev_log.output}")
        if build_logs.output.strip():
            sections.append(f"=== Next.js Build/Runtime Logs ===\n{build_logs.output}")
        if errors.output.strip():
            sections.append(f"=== Recent Errors (from dev-server.log) ===\n{errors.output}")

        info = process_info.output.strip()
        return LogsResponse(
            logs="\n\n".join(sections)
            if sections
            else "No logs found. Make sure the dev server is running in the sandbox.",
            process_info=info or "Unknown",
            has_dev_server=bool(info) and NO_DEV_SERVER not in info,
        )

    async def preview_url(
        self, sandbox_id: str, port: int | None = None, user_id: UUID | None = None
    ) -> PreviewUrlResponse:
        """
        Preview link for a project's dev server, with a best-effort health check.

        The port comes from the project row when one matches, else the
        request, else 3000.
        """
        project = await ProjectService(self.session).resolve_project(sandbox_id, user_id)
        if project is not None and project.dev_port:
            port = project.dev_port
        port = port or DEFAULT_DEV_PORT
        project_path = project.project_path if project is not None else None

        sandbox, was_started = await self.provider.ensure_sandbox_running(sandbox_id)
        link = await self.provider.preview_link(sandbox, port)

        status, error = await self._server_status(sandbox, link.url, port, project_path)
        if status == "stopped" and was_started:
            error = (
                "Dev server is not running. The sandbox was just started and the "
                "dev server may still be starting."
            )
        return PreviewUrlResponse(
            preview_url=link.url, token=link.token, server_status=status, server_error=error
        )

    async def _server_status(
        self, sandbox: AsyncSandbox, url: str, port: int, project_path: str | None
    ) -> tuple[str, str | None]:
        try:
            home = await self.provider.home_dir(sandbox)
        except SandboxError as exc:
            logger.warning("sandbox_home_dir_unavailable", error=exc.message)
            return "unknown", None

        project_dir = (
            project_path
            if project_path and project_path.startswith("/")
            else f"{home}/{project_path or DEFAULT_PROJECT_DIR}"
        )
        check = await self.provider.exec(
            sandbox,
            f"pgrep -f 'next dev.*-p {port}' || pgrep -f 'next dev' || "
            "pgrep -f 'npm.*dev' || echo not_running",
            cwd=project_dir,
        )
        if "not_running" in check.output:
            return "stopped", f"Dev server process is not running on port {port}."

        try:
            async with httpx.AsyncClient(timeout=5.0, follow_redirects=True) as client:
                response = await client.head(url)
        except httpx.HTTPError:
            return "unknown", None

        if response.status_code in (502, 503, 504):
            return "error", f"Server returned {response.status_code}. Check the dev server logs."
        if 200 <= response.status_code < 400:
            return "running", None
        return "error", f"Server returned status {response.status_code}"

    # ========================================================================
    # Dev server restart
    # ========================================================================

    async def _pause(self, seconds: float) -> None:
        if seconds:
            await asyncio.sleep(seconds)

    async def _try_exec(self, sandbox: AsyncSandbox, command: str, cwd: str) -> str:
        """Output of a best-effort command, or "" when the call itself fails."""
        try:
            return (await self.provider.exec(sandbox, command, cwd=cwd)).output
        except SandboxError as exc:
            logger.warning("sandbox_command_skipped", command=command[:80], error=exc.message)
            return ""

    async def _dir_exists(self, sandbox: AsyncSandbox, path: str, cwd: str) -> bool:
        output = await self._try_exec(sandbox, f"test -d {shlex.quote(path)} && echo exists", cwd)
        return output.strip() == "exists"

    async def _locate_project_dir(
        self,
        sandbox: AsyncSandbox,
        home: str,
        project_path: str,
        sandbox_id: str,
        project: Project | None,
        user_id: UUID | None,
    ) -> str:
        project_dir = resolve_project_dir(home, project_path)
        if await self._dir_exists(sandbox, project_dir, home):
            return project_dir

        tried = [project_dir]
        found = await self._try_exec(
            sandbox,
            f"find {shlex.quote(home)} -maxdepth 3 -type d -name {PROJECTS_DIR_NAME} "
            "2>/dev/null | head -1",
            home,
        )
        base = found.strip()
        if base and user_id is not None:
            project_id = str(project.id) if project is not None else sandbox_id
            candidate = f"{base}/{user_id}/{sandbox_id}/{project_id}"
            tried.append(candidate)
            if await self._dir_exists(sandbox, candidate, home):
                logger.info("dev_server_project_dir_recovered", path=candidate)
                return candidate

        raise SandboxPathNotFoundError(f"Project path does not exist: {project_dir}", tried=tried)

    async def _port_holder(self, sandbox: AsyncSandbox, port: int, cwd: str) -> str | None:
        output = await self._try_exec(sandbox, f"lsof -ti:{port} 2>/dev/null || echo free", cwd)
        pids = output.split()
        if not pids or "free" in pids:
            return None
        return " ".join(pids)

    async def _free_port(self, sandbox: AsyncSandbox, port: int, cwd: str) -> None:
        """
        Stop whatever serves the port: the PM2 app, then `next dev -p port`, then
        any process bound to it.

        Raises:
            DevServerPortConflictError: If the port is still bound after a forced kill
        """
        await self._try_exec(
            sandbox, f"pm2 delete {pm2_process_name(port)} 2>/dev/null || true", cwd
        )
        await self._try_exec(sandbox, f"pkill -9 -f 'next dev.*-p {port}' 2>/dev/null || true", cwd)
        await self._try_exec(
            sandbox,
            f"lsof -ti:{port} 2>/dev/null | xargs -r kill -9 2>/dev/null "
            f"|| fuser -k {port}/tcp 2>/dev/null || true",
            cwd,
        )
        await self._pause(self.settle_seconds)

        holder = await self._port_holder(sandbox, port, cwd)
        if holder is None:
            return

        logger.warning("dev_server_port_busy", port=port, process=holder)
        await self._try_exec(sandbox, f"kill -9 {holder} 2>/dev/null || true", cwd)
        await self._pause(self.settle_seconds)
        holder = await self._port_holder(sandbox, port, cwd)
        if holder is not None:
            raise DevServerPortConflictError(port, holder)

    async def _disk_usage(self, sandbox: AsyncSandbox, cwd: str) -> int:
        output = await self._try_exec(
            sandbox, "df -P / | tail -1 | awk '{print $5}' | tr -d '%'", cwd
        )
        try:
            return int(output.strip())
        except ValueError:
            return 0

    async def _ensure_disk_space(self, sandbox: AsyncSandbox, project_dir: str) -> None:
        usage = await self._disk_usage(sandbox, project_dir)
        if usage < DISK_CLEANUP_PERCENT:
            return

        logger.warning("sandbox_disk_low", usage_percent=usage, project_dir=project_dir)
        quoted = shlex.quote(project_dir)
        await self._try_exec(
            sandbox,
            f"find {quoted} -name '*.log' -mtime +7 -delete 2>/dev/null; "
            f"rm -rf {quoted}/.next {quoted}/node_modules/.cache 2>/dev/null; true",
            project_dir,
        )
        usage = await self._disk_usage(sandbox, project_dir)
        if usage >= DISK_CRITICAL_PERCENT:
            raise SandboxCommandError(
                f"Disk space critically low ({usage}% used). Free up space in the sandbox."
            )

    async def _start_with_pm2(self, sandbox: AsyncSandbox, project_dir: str, port: int) -> bool:
        """Start the dev server under PM2. False when PM2 doesn't report it online."""
        name = pm2_process_name(port)
        config_path = shlex.quote(f"{project_dir}/ecosystem.config.cjs")
        encoded = base64.b64encode(pm2_ecosystem_config(project_dir, port).encode("utf-8"))
        write = await self.provider.exec(
            sandbox,
            f"printf '%s' {shlex.quote(encoded.decode('ascii'))} | base64 -d > {config_path}",
            cwd=project_dir,
        )
        if not write.ok:
            raise SandboxCommandError("Failed to write PM2 config", write.output)

        await self._try_exec(
            sandbox, f"pm2 delete {name} 2>/dev/null; pm2 start {config_path}", project_dir
        )
        await self._pause(self.settle_seconds)
        status = await self._try_exec(
            sandbox,
            f"pm2 describe {name} 2>/dev/null | grep -q online && echo online || echo offline",
            project_dir,
        )
        if status.strip() != "online":
            logger.warning("dev_server_pm2_not_online", port=port)
            return False

        await self._try_exec(sandbox, "pm2 save", project_dir)
        return True

    async def _start_with_nohup(self, sandbox: AsyncSandbox, project_dir: str, port: int) -> None:
        result = await self.provider.exec(
            sandbox,
            f"cd {shlex.quote(project_dir)} && "
            f"PORT={port} nohup npm run dev -- -p {port} > dev-server.log 2>&1 & "
            "echo $! > .dev-server.pid && echo STARTED",
            cwd=project_dir,
        )
        if "STARTED" in result.output:
            return
        if any(marker in result.output for marker in _DISK_FULL_MARKERS):
            raise SandboxCommandError(
                "Failed to start dev server: disk space exhausted", result.output
            )
        raise SandboxCommandError("Failed to start dev server", result.output)

    async def _launch(self, sandbox: AsyncSandbox, project_dir: str, port: int) -> bool:
        """Start `npm run dev -- -p port`. Returns True when PM2 manages it."""
        quoted = shlex.quote(project_dir)
        await self._try_exec(
            sandbox, f"rm -f {quoted}/.next/dev/lock {quoted}/.next/dev/lock.tmp", project_dir
        )
        package = await self.provider.exec(
            sandbox, f"test -f {quoted}/package.json && echo exists", cwd=project_dir
        )
        if package.output.strip() != "exists":
            raise SandboxPathNotFoundError(
                f"package.json not found in {project_dir}", tried=[project_dir]
            )

        pm2_path = await self._try_exec(sandbox, "command -v pm2 || echo not_found", project_dir)
        pm2_path = pm2_path.strip()
        if pm2_path and "not_found" not in pm2_path:
            if await self._start_with_pm2(sandbox, project_dir, port):
                return True
        await self._start_with_nohup(sandbox, project_dir, port)
        return False

    async def _process_running(self, sandbox: AsyncSandbox, port: int, cwd: str, pm2: bool) -> bool:
        output = await self._try_exec(
            sandbox,
            f"pgrep -f 'next dev.*-p {port}' || pgrep -f 'npm.*dev.*-p {port}' || echo not_running",
            cwd,
        )
        if output.strip() and "not_running" not in output:
            return True
        if not pm2:
            return False
        status = await self._try_exec(
            sandbox,
            f"pm2 describe {pm2_process_name(port)} 2>/dev/null | grep -q online "
            "&& echo online || echo offline",
            cwd,
        )
        return status.strip() == "online"

    async def _http_status(self, sandbox: AsyncSandbox, port: int, cwd: str) -> str:
        output = await self._try_exec(
            sandbox,
            f"curl -s -o /dev/null -w '%{{http_code}}' --max-time 5 http://localhost:{port} "
            "|| echo failed",
            cwd,
        )
        code = output.strip()[:3]
        return code if code.isdigit() and code != "000" else "failed"

    async def _remember_location(
        self, project: Project, dev_port: int, project_path: str
    ) -> None:
        if project.dev_port == dev_port and project.project_path == project_path:
            return
        try:
            await self.session.execute(
                update(Project)
                .where(Project.id == project.id)
                .values(dev_port=dev_port, project_path=project_path, updated_at=func.now())
            )
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            logger.warning(
                "dev_server_port_not_saved",
                project_id=str(project.id),
                port=dev_port,
                error=str(exc),
            )

    async def restart_dev_server(
        self,
        sandbox_id: str,
        project_path: str | None = None,
        dev_port: int | None = None,
        user_id: UUID | None = None,
    ) -> RestartServerResponse:
        """
        Free the project's port and start its Next.js dev server again.

        The stored project row wins over the request for port and path, and
        missing values are written back for signed-in callers. PM2 runs the
        server when the sandbox has it, otherwise a nohup'd npm process.
        Only processes tied to this project's port are killed, since other
        users' projects share the sandbox.

        Raises:
            ProjectNotFoundError: If no project matches and the request lacks a port or path
            SandboxPathNotFoundError: If the project directory or package.json is missing
            DevServerPortConflictError: If the port can't be freed
            SandboxCommandError: If the server can't be launched or the disk is full
        """
        project = await ProjectService(self.session).resolve_project(sandbox_id, user_id)
        if project is not None:
            dev_port = project.dev_port or dev_port
            project_path = project.project_path or project_path
        if not dev_port or not project_path:
            raise ProjectNotFoundError(sandbox_id)

        sandbox, was_started = await self.provider.ensure_sandbox_running(sandbox_id)
        home = await self.provider.home_dir(sandbox)
        project_dir = await self._locate_project_dir(
            sandbox, home, project_path, sandbox_id, project, user_id
        )
        logger.info(
            "dev_server_restart_started",
            sandbox_id=sandbox_id,
            port=dev_port,
            project_dir=project_dir,
            sandbox_was_started=was_started,
        )

        await self._free_port(sandbox, dev_port, project_dir)
        await self._ensure_disk_space(sandbox, project_dir)
        used_pm2 = await self._launch(sandbox, project_dir, dev_port)
        await self._pause(self.startup_wait_seconds)

        logs = await self._try_exec(
            sandbox, "tail -100 dev-server.log 2>/dev/null || echo 'No log file'", project_dir
        )
        port_conflict = any(marker in logs for marker in _PORT_IN_USE_MARKERS)
        if port_conflict:
            logger.warning("dev_server_port_conflict_in_logs", sandbox_id=sandbox_id, port=dev_port)
            await self._free_port(sandbox, dev_port, project_dir)
            await self._start_with_nohup(sandbox, project_dir, dev_port)
            used_pm2 = False
            await self._pause(self.startup_wait_seconds)

        build_errors, error_context = find_build_errors(logs)
        if build_errors:
            logger.warning(
                "dev_server_build_errors", sandbox_id=sandbox_id, errors=build_errors[:5]
            )

        process_running = await self._process_running(sandbox, dev_port, project_dir, used_pm2)
        server_status = await self._http_status(sandbox, dev_port, project_dir)
        if server_status not in ("200", "304") and process_running:
            server_status = "starting"

        if project is not None and user_id is not None:
            await self._remember_location(project, dev_port, project_path)

        link = await self.provider.preview_link(sandbox, dev_port)
        logger.info(
            "dev_server_restarted",
            sandbox_id=sandbox_id,
            port=dev_port,
            server_status=server_status,
            pm2=used_pm2,
        )
        return RestartServerResponse(
            success=server_status in ("200", "304") or process_running,
            preview_url=link.url,
            preview_token=link.token,
            server_status=server_status,
            process_running=process_running,
            logs=logs[-1000:],
            port_conflict=port_conflict,
            build_error=bool(build_errors),
            build_errors=build_errors,
            error_context=error_context,
        )
