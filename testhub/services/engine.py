from __future__ import annotations

import logging
import os
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Union

import docker
from docker.errors import APIError, DockerException, NotFound

from testhub.config import BrowserSettings, Settings
from testhub.services.context import RunContext

LOGGER = logging.getLogger("testhub.engine")

ENGINE_LOG = "engine.log"
DETAIL_JSON = "report.json"
DETAIL_HTML = "report.html"
CONTAINER_WORKDIR = PurePosixPath("/workspace")
CONTAINER_OUTPUT = CONTAINER_WORKDIR / "output"
CONTAINER_FEATURES = CONTAINER_WORKDIR / "features"

PathLike = Union[Path, PurePosixPath]


class RunInterrupted(RuntimeError):
    """The engine stopped because the run's cancel event was set."""


@dataclass
class EngineResult:
    exit_code: int
    output_dir: Path
    log: Optional[Path] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def build_behave_command(
    executable: str,
    tag_expression: Optional[str],
    feature_selector: Optional[str],
    *,
    output_base: PathLike,
    features_root: PathLike,
) -> List[str]:
    """Assemble the behave invocation for one batch.

    Formatters pair with ``-o`` targets in order; ``pretty`` comes last so it
    is left without a target and writes to stdout.
    """
    args = [
        executable,
        "--no-capture",
        "-f",
        "json.pretty",
        "-o",
        str(output_base / "engine-report" / DETAIL_JSON),
        "-f",
        "behave_html_formatter:HTMLFormatter",
        "-o",
        str(output_base / "engine-report" / DETAIL_HTML),
        "-f",
        "allure_behave.formatter:AllureFormatter",
        "-o",
        str(output_base / "allure-results"),
        "-f",
        "pretty",
    ]
    if tag_expression:
        args.extend(["--tags", tag_expression])
    if feature_selector:
        for feature in feature_selector.split(","):
            feature = feature.strip()
            if feature:
                args.append(str(features_root / feature))
    else:
        args.append(str(features_root))
    return args


def browser_environment(browser: BrowserSettings) -> Dict[str, str]:
    env: Dict[str, str] = {}
    if browser.executable_path:
        env["BROWSER_EXECUTABLE_PATH"] = browser.executable_path
    if browser.launch_args:
        env["BROWSER_LAUNCH_ARGS"] = " ".join(browser.launch_args)
    return env


class TestEngine:
    """Interface to the external test execution engine."""

    __test__ = False

    def run(
        self,
        context: RunContext,
        tag_expression: Optional[str],
        feature_selector: Optional[str],
    ) -> EngineResult:
        raise NotImplementedError

    def terminate(self, context: RunContext) -> None:
        """Best-effort interrupt of an in-flight invocation."""
        context.cancel_event.set()


class LocalBehaveEngine(TestEngine):
    """Run behave as a child process of the service."""

    def __init__(
        self,
        command: str = "behave",
        features_path: Path = Path("features"),
        browser: Optional[BrowserSettings] = None,
        *,
        poll_interval: float = 0.5,
    ) -> None:
        self._command = command
        self._features_path = features_path
        self._browser = browser or BrowserSettings()
        self._poll_interval = poll_interval
        self._processes: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def run(
        self,
        context: RunContext,
        tag_expression: Optional[str],
        feature_selector: Optional[str],
    ) -> EngineResult:
        context.prepare_directories()
        args = build_behave_command(
            self._command,
            tag_expression,
            feature_selector,
            output_base=context.output_base,
            features_root=self._features_path,
        )
        env = dict(os.environ)
        env.update(browser_environment(self._browser))
        env.update(context.environment)
        log_path = context.output_base / ENGINE_LOG
        LOGGER.info("Launching engine for run %s: %s", context.run_id, " ".join(args))

        with log_path.open("a", encoding="utf-8") as log_handle:
            proc = subprocess.Popen(args, stdout=log_handle, stderr=subprocess.STDOUT, env=env)
            with self._lock:
                self._processes[context.run_id] = proc
            try:
                while True:
                    try:
                        exit_code = proc.wait(timeout=self._poll_interval)
                        break
                    except subprocess.TimeoutExpired:
                        if context.cancelled:
                            self._kill(proc)
                            raise RunInterrupted(f"Run {context.run_id} interrupted")
            finally:
                with self._lock:
                    self._processes.pop(context.run_id, None)
        if context.cancelled:
            raise RunInterrupted(f"Run {context.run_id} interrupted")
        return EngineResult(exit_code=exit_code, output_dir=context.output_base, log=log_path)

    def terminate(self, context: RunContext) -> None:
        super().terminate(context)
        with self._lock:
            proc = self._processes.get(context.run_id)
        if proc is not None:
            self._kill(proc)

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        try:
            proc.kill()
            proc.wait(timeout=10)
        except (OSError, subprocess.TimeoutExpired) as exc:
            LOGGER.debug("Failed to kill engine process %s: %s", proc.pid, exc)


@dataclass(frozen=True)
class Mount:
    source: str
    target: str
    read_only: bool = False

    @property
    def mode(self) -> str:
        return "ro" if self.read_only else "rw"


@dataclass(frozen=True)
class ContainerSpec:
    """Everything needed to start one engine container."""

    image: str
    command: List[str]
    name: str
    environment: Dict[str, str] = field(default_factory=dict)
    mounts: List[Mount] = field(default_factory=list)
    working_dir: Optional[str] = None
    shm_size: Optional[str] = None


class ContainerHandle:
    id: str

    def status(self) -> str:
        """Container state as docker reports it, or ``not_found`` / ``unknown``."""
        raise NotImplementedError

    def exit_code(self) -> Optional[int]:
        raise NotImplementedError

    def logs(self) -> str:
        raise NotImplementedError

    def kill(self) -> None:
        raise NotImplementedError

    def remove(self) -> None:
        raise NotImplementedError


class SDKContainerHandle(ContainerHandle):
    def __init__(self, container) -> None:
        self._container = container
        self.id = container.id

    def status(self) -> str:
        try:
            self._container.reload()
        except NotFound:
            return "not_found"
        except APIError as exc:
            LOGGER.debug("Failed to poll container %s: %s", self.id, exc)
            return "unknown"
        return self._container.status or "unknown"

    def exit_code(self) -> Optional[int]:
        code = self._container.attrs.get("State", {}).get("ExitCode")
        try:
            return int(code) if code is not None else None
        except (TypeError, ValueError):
            return None

    def logs(self) -> str:
        try:
            return self._container.logs().decode("utf-8", errors="ignore")
        except APIError as exc:
            LOGGER.debug("Failed to gather logs for container %s: %s", self.id, exc)
            return ""

    def kill(self) -> None:
        try:
            self._container.kill()
        except APIError as exc:
            LOGGER.warning("Failed to kill container %s: %s", self.id, exc)

    def remove(self) -> None:
        try:
            self._container.remove(force=True)
        except APIError as exc:
            LOGGER.warning("Failed to remove container %s: %s", self.id, exc)


def _docker(*args: str) -> subprocess.CompletedProcess:
    return subprocess.run(["docker", *args], capture_output=True, text=True, check=False)


class CLIContainerHandle(ContainerHandle):
    def __init__(self, container_id: str) -> None:
        self.id = container_id

    def status(self) -> str:
        proc = _docker("inspect", "-f", "{{.State.Status}}", self.id)
        if proc.returncode != 0:
            if "no such" in (proc.stderr or "").lower():
                return "not_found"
            return "unknown"
        return proc.stdout.strip() or "unknown"

    def exit_code(self) -> Optional[int]:
        proc = _docker("inspect", "-f", "{{.State.ExitCode}}", self.id)
        if proc.returncode != 0:
            return None
        try:
            return int(proc.stdout.strip())
        except ValueError:
            return None

    def logs(self) -> str:
        # docker logs replays the container's stderr on its own stderr.
        proc = _docker("logs", self.id)
        return (proc.stdout or "") + (proc.stderr or "")

    def kill(self) -> None:
        proc = _docker("kill", self.id)
        if proc.returncode != 0:
            LOGGER.debug("Failed to kill container %s: %s", self.id, proc.stderr.strip())

    def remove(self) -> None:
        proc = _docker("rm", "-f", self.id)
        if proc.returncode != 0:
            LOGGER.warning("Failed to remove container %s: %s", self.id, proc.stderr.strip())


class DockerBackend:
    def start(self, spec: ContainerSpec) -> ContainerHandle:
        raise NotImplementedError


class DockerSDKBackend(DockerBackend):
    def __init__(self, client=None) -> None:
        self._client = client or docker.from_env()

    def start(self, spec: ContainerSpec) -> ContainerHandle:
        try:
            container = self._client.containers.run(
                spec.image,
                spec.command,
                detach=True,
                name=spec.name,
                environment=spec.environment,
                volumes={mount.source: {"bind": mount.target, "mode": mount.mode} for mount in spec.mounts},
                working_dir=spec.working_dir,
                shm_size=spec.shm_size,
            )
        except DockerException as exc:
            raise RuntimeError(f"Failed to start container {spec.name}: {exc}") from exc
        return SDKContainerHandle(container)


class DockerCLIBackend(DockerBackend):
    @staticmethod
    def run_arguments(spec: ContainerSpec) -> List[str]:
        # No --rm: logs and the exit code stay readable until the engine removes the container.
        args = ["run", "-d", "--name", spec.name]
        if spec.shm_size:
            args.extend(["--shm-size", spec.shm_size])
        for mount in spec.mounts:
            args.extend(["-v", f"{mount.source}:{mount.target}:{mount.mode}"])
        for key, value in spec.environment.items():
            args.extend(["-e", f"{key}={value}"])
        if spec.working_dir:
            args.extend(["-w", spec.working_dir])
        args.append(spec.image)
        args.extend(spec.command)
        return args

    def start(self, spec: ContainerSpec) -> ContainerHandle:
        proc = _docker(*self.run_arguments(spec))
        output = proc.stdout.strip().splitlines()
        if proc.returncode != 0 or not output:
            raise RuntimeError(proc.stderr.strip() or f"docker run failed for {spec.name}")
        return CLIContainerHandle(output[-1].strip())


class ContainerBehaveEngine(TestEngine):
    """Run behave inside a disposable container with the run directory mounted."""

    def __init__(
        self,
        backend: DockerBackend,
        image: str = "testhub-behave-runner:latest",
        features_path: Path = Path("features"),
        browser: Optional[BrowserSettings] = None,
        *,
        command: str = "behave",
        poll_interval: float = 1.0,
    ) -> None:
        self._backend = backend
        self._image = image
        self._features_path = features_path
        self._browser = browser or BrowserSettings()
        self._command = command
        self._poll_interval = poll_interval
        self._handles: Dict[str, ContainerHandle] = {}
        self._lock = threading.Lock()

    @property
    def image(self) -> str:
        return self._image

    def run(
        self,
        context: RunContext,
        tag_expression: Optional[str],
        feature_selector: Optional[str],
    ) -> EngineResult:
        context.prepare_directories()
        command = build_behave_command(
            self._command,
            tag_expression,
            feature_selector,
            output_base=CONTAINER_OUTPUT,
            features_root=CONTAINER_FEATURES,
        )
        env = browser_environment(self._browser)
        env.update(context.environment)
        spec = ContainerSpec(
            image=self._image,
            command=command,
            name=f"testhub-run-{context.run_id}",
            environment=env,
            mounts=[
                Mount(str(context.output_base.resolve()), str(CONTAINER_OUTPUT)),
                Mount(str(self._features_path.resolve()), str(CONTAINER_FEATURES), read_only=True),
            ],
            working_dir=str(CONTAINER_WORKDIR),
            shm_size="1g",
        )
        handle = self._backend.start(spec)
        LOGGER.info("Started container %s for run %s", handle.id, context.run_id)
        with self._lock:
            self._handles[context.run_id] = handle

        log_path = context.output_base / ENGINE_LOG
        try:
            exit_code = self._wait(handle, context)
            log_path.write_text(handle.logs(), encoding="utf-8")
        finally:
            with self._lock:
                self._handles.pop(context.run_id, None)
            handle.remove()
        return EngineResult(exit_code=exit_code, output_dir=context.output_base, log=log_path)

    def _wait(self, handle: ContainerHandle, context: RunContext) -> int:
        while True:
            if context.cancel_event.wait(self._poll_interval):
                handle.kill()
                raise RunInterrupted(f"Run {context.run_id} interrupted")
            status = handle.status()
            if status in {"exited", "dead"}:
                code = handle.exit_code()
                return code if code is not None else -1
            if status == "not_found":
                raise RuntimeError(f"Container {handle.id} disappeared before reporting an exit code")

    def terminate(self, context: RunContext) -> None:
        super().terminate(context)
        with self._lock:
            handle = self._handles.get(context.run_id)
        if handle is not None:
            handle.kill()


def build_engine(settings: Settings) -> TestEngine:
    if settings.engine_backend == "local":
        return LocalBehaveEngine(
            command=settings.engine_command,
            features_path=settings.features_path,
            browser=settings.browser,
        )
    if settings.engine_backend == "docker-sdk":
        try:
            backend: DockerBackend = DockerSDKBackend()
        except DockerException as exc:
            raise RuntimeError(f"Docker daemon unavailable: {exc}") from exc
    else:
        backend = DockerCLIBackend()
    return ContainerBehaveEngine(
        backend,
        image=settings.engine_image,
        features_path=settings.features_path,
        browser=settings.browser,
        command=settings.engine_command,
    )
