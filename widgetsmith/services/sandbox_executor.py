# widgetsmith/services/sandbox_executor.py
import ast
import asyncio
import json
import os
import platform
import shutil
import sys
import tempfile
import logging
from typing import Any, Dict, Optional
from uuid import uuid4

import aiofiles
import docker
from docker.errors import APIError, DockerException, ImageNotFound

from widgetsmith.core.config import Settings
from widgetsmith.exceptions import CodeValidationError, ExecutionFailedError, SandboxTimeoutError
from widgetsmith.services import render_runtime

logger = logging.getLogger(__name__)

RUNNER_PATH = os.path.abspath(render_runtime.__file__)

FORBIDDEN_NAMES = frozenset({
    "eval", "exec", "compile", "open", "__import__", "globals", "locals", "vars",
    "input", "breakpoint", "getattr", "setattr", "delattr", "memoryview", "help",
    "exit", "quit", "__builtins__", "__loader__", "__spec__",
})


def clean_code(raw_code: str) -> str:
    """Strips markdown fences that LLMs like to wrap code in."""
    code = (raw_code or "").strip()
    if code.startswith("```python"):
        code = code[len("```python"):].strip()
    elif code.startswith("```"):
        code = code[len("```"):].strip()
    if code.endswith("```"):
        code = code[:-3].strip()
    return code


def validate_code(code: str, max_length: int = 50000) -> None:
    """
    Static checks on generated code before it is stored or executed.
    Raises CodeValidationError describing the first problem found.
    """
    if not code or not isinstance(code, str):
        raise CodeValidationError("Code is empty or invalid.")
    if len(code) > max_length:
        raise CodeValidationError(f"Code is too long (max {max_length} characters).")

    try:
        tree = ast.parse(code, filename="<widget>")
    except SyntaxError as e:
        raise CodeValidationError(f"Syntax error in generated code (line {e.lineno}): {e.msg}")

    has_render = False
    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            if isinstance(node, ast.ImportFrom) and node.level:
                raise CodeValidationError("Relative imports are not allowed.")
            modules = [alias.name for alias in node.names] if isinstance(node, ast.Import) else [node.module or ""]
            for module in modules:
                if module.split(".")[0] not in render_runtime.ALLOWED_MODULES:
                    raise CodeValidationError(f"Forbidden import: {module}")
        elif isinstance(node, ast.Name) and node.id in FORBIDDEN_NAMES:
            raise CodeValidationError(f"Forbidden name: {node.id}")
        elif isinstance(node, ast.Attribute) and node.attr.startswith("__") and node.attr.endswith("__"):
            raise CodeValidationError(f"Forbidden attribute access: {node.attr}")
        elif isinstance(node, ast.FunctionDef) and node.name == "render" and node in tree.body:
            has_render = True

    if not has_render:
        raise CodeValidationError("The generated code does not define a render() function.")


class SandboxService:
    """
    Runs a generated render() function in a fresh, isolated execution context.

    Subclasses decide where the runner script executes. Every call gets its own
    scratch directory holding the runner and the widget code; nothing survives
    between calls.
    """
    backend_name = "base"

    def __init__(self, settings: Settings):
        self.settings = settings
        self.sandbox_base_dir = settings.SANDBOX_BASE_DIR
        self.timeout_seconds = settings.SANDBOX_TIMEOUT_SECONDS
        self._is_initialized = False

    async def initialize(self):
        if self._is_initialized:
            logger.debug("SandboxService already initialized.")
            return
        os.makedirs(self.sandbox_base_dir, exist_ok=True)
        logger.info(f"Sandbox base directory ensured: {self.sandbox_base_dir} (backend: {self.backend_name})")
        self._is_initialized = True

    async def shutdown(self):
        self._is_initialized = False

    async def run_render(self, code: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Executes render(params) and returns the runner payload
        ({"status": "success", "output": ...} or {"status": "error", "message": ...}).
        Raises SandboxTimeoutError on timeout and ExecutionFailedError when the
        sandbox itself misbehaves.
        """
        validate_code(code, self.settings.SANDBOX_MAX_CODE_LENGTH)
        if not self._is_initialized:
            await self.initialize()

        scratch_dir = tempfile.mkdtemp(prefix="widget_", dir=self.sandbox_base_dir)
        try:
            async with aiofiles.open(os.path.join(scratch_dir, "widget.py"), "w", encoding="utf-8") as f:
                await f.write(code)
            shutil.copyfile(RUNNER_PATH, os.path.join(scratch_dir, "runner.py"))
            stdout = await self._execute(scratch_dir, json.dumps(params, default=str))
        finally:
            shutil.rmtree(scratch_dir, ignore_errors=True)

        return self._parse_runner_output(stdout)

    async def _execute(self, scratch_dir: str, params_json: str) -> str:
        raise NotImplementedError

    def _parse_runner_output(self, stdout: str) -> Dict[str, Any]:
        lines = [line for line in stdout.strip().splitlines() if line.strip()]
        if not lines:
            raise ExecutionFailedError("The widget produced no output.")
        try:
            payload = json.loads(lines[-1])
        except json.JSONDecodeError:
            raise ExecutionFailedError(f"The widget produced unreadable output: {lines[-1][:200]}")
        if not isinstance(payload, dict) or payload.get("status") not in ("success", "error"):
            raise ExecutionFailedError("The widget runner returned an invalid status.")
        return payload


class SubprocessSandbox(SandboxService):
    """
    Fresh `python -I -S` interpreter per call: no site-packages, no user
    environment, empty env vars, rlimits applied by the runner itself.
    """
    backend_name = "subprocess"

    async def _execute(self, scratch_dir: str, params_json: str) -> str:
        env = {
            "WIDGET_CODE_PATH": os.path.join(scratch_dir, "widget.py"),
            "WIDGET_PARAMETERS": params_json,
            "WIDGET_MEM_LIMIT_MB": str(self.settings.SANDBOX_MEM_LIMIT_MB),
            "WIDGET_CPU_SECONDS": str(int(self.timeout_seconds) + 1),
        }
        if platform.system() == "Windows":
            env["SYSTEMROOT"] = os.environ.get("SYSTEMROOT", "")

        proc = await asyncio.create_subprocess_exec(
            sys.executable, "-I", "-S", os.path.join(scratch_dir, "runner.py"),
            cwd=scratch_dir,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            # Read and wait at the same time; avoids pipe deadlock
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.communicate()
            logger.warning(f"Widget execution killed after {self.timeout_seconds}s")
            raise SandboxTimeoutError(self.timeout_seconds)

        stderr = err.decode("utf-8", errors="ignore").strip()
        if stderr:
            logger.debug(f"Widget stderr:\n{stderr[:2000]}")
        if proc.returncode != 0 and not out.strip():
            raise ExecutionFailedError(
                f"Widget process exited with code {proc.returncode}: {stderr[-500:] or 'no output'}"
            )
        return out.decode("utf-8", errors="ignore")


class DockerSandbox(SandboxService):
    """
    Runs the runner inside a throwaway container with memory and CPU-share
    limits and networking disabled. The Docker client is created lazily.
    """
    backend_name = "docker"

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.client: Optional[docker.DockerClient] = None
        self._docker_available = False

    async def ensure_container_ready(self):
        if self._docker_available and self.client:
            return
        await asyncio.to_thread(self._setup_docker_sync)
        if not self._docker_available:
            raise ExecutionFailedError("Docker daemon or sandbox image is unavailable.")

    def _setup_docker_sync(self):
        try:
            self.client = docker.from_env()
            self.client.ping()
            self.client.images.get(self.settings.SANDBOX_IMAGE)
            self._docker_available = True
            logger.info(f"✅ Docker sandbox ready with image '{self.settings.SANDBOX_IMAGE}'.")
        except ImageNotFound:
            self._docker_available = False
            logger.critical(f"🛑 Docker image '{self.settings.SANDBOX_IMAGE}' not found. Please build or pull it.")
        except DockerException as e:
            self._docker_available = False
            logger.critical(f"🛑 Failed to connect to Docker daemon: {e}")

    async def shutdown(self):
        if self.client:
            try:
                await asyncio.to_thread(self.client.close)
            except DockerException as e:
                logger.error(f"Error during Docker client shutdown: {e}", exc_info=True)
            self.client = None
            self._docker_available = False
        await super().shutdown()

    async def _execute(self, scratch_dir: str, params_json: str) -> str:
        await self.ensure_container_ready()
        container = None
        try:
            container = await asyncio.to_thread(
                self.client.containers.run,
                image=self.settings.SANDBOX_IMAGE,
                name=f"widget_sandbox_{uuid4().hex}",
                command=["python", "-I", "-S", "/sandbox/runner.py"],
                volumes={scratch_dir: {"bind": "/sandbox", "mode": "ro"}},
                environment={
                    "WIDGET_CODE_PATH": "/sandbox/widget.py",
                    "WIDGET_PARAMETERS": params_json,
                    "WIDGET_CPU_SECONDS": str(int(self.timeout_seconds) + 1),
                },
                detach=True,
                network_mode="none",
                mem_limit=f"{self.settings.SANDBOX_MEM_LIMIT_MB or 128}m",
                cpu_shares=self.settings.SANDBOX_CPU_SHARES,
            )
            try:
                await asyncio.wait_for(asyncio.to_thread(container.wait), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                raise SandboxTimeoutError(self.timeout_seconds)
            stdout_bytes = await asyncio.to_thread(container.logs, stdout=True, stderr=False)
            return stdout_bytes.decode("utf-8", errors="ignore")
        except APIError as e:
            raise ExecutionFailedError(f"Docker API error during widget execution: {e}")
        finally:
            if container is not None:
                try:
                    await asyncio.to_thread(container.remove, force=True)
                except DockerException as e:
                    logger.error(f"Error removing sandbox container '{container.id}': {e}")


def build_sandbox_service(settings: Settings) -> SandboxService:
    if settings.SANDBOX_BACKEND == "docker":
        return DockerSandbox(settings)
    return SubprocessSandbox(settings)
