"""
Docker Engine
=============
Thin wrapper over the docker SDK used by the smoke controller.

All daemon calls go through this class so the controller's lifecycle logic
can be exercised with a mocked engine; no real Docker daemon is required to
test it.

Errors are NOT swallowed here: docker.errors.* propagate to the controller,
which classifies them per lifecycle step.
"""
import logging
from typing import Optional

import docker
from docker.errors import APIError, NotFound
from docker.models.containers import Container

from release_gate.executor.process_runner import write_log

logger = logging.getLogger(__name__)

# Docker SDK per-request HTTP timeout (seconds); image builds can stream for a long time
_CLIENT_TIMEOUT = 600


def is_name_conflict(error: APIError) -> bool:
    """True if the daemon rejected a create because the container name is taken."""
    status = getattr(error, "status_code", None)
    if status == 409:
        return True
    return "already in use" in str(error).lower()


class DockerEngine:
    """
    Image build + container lifecycle operations.

    Usage:
        engine = DockerEngine()
        engine.build_image(".", "Dockerfile", "server:latest")
        engine.force_remove("standalone-server")
        container = engine.run_container("server:latest", "standalone-server", ...)
    """

    def __init__(self, client: Optional[docker.DockerClient] = None) -> None:
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env(timeout=_CLIENT_TIMEOUT)
        return self._client

    def build_image(
        self,
        context: str,
        dockerfile: str,
        tag: str,
        log_path: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        """
        Build ``tag`` from ``dockerfile`` in ``context``.

        ``timeout_seconds`` caps each read of the build stream, so a stalled
        daemon cannot hold the call past the run's budget.

        Returns
        -------
        str
            Short image id.

        Raises
        ------
        docker.errors.BuildError, docker.errors.APIError
        """
        logger.info("Building image %s (context=%s, dockerfile=%s)", tag, context, dockerfile)
        kwargs = {}
        if timeout_seconds is not None:
            kwargs["timeout"] = max(1, int(timeout_seconds))
        image, build_logs = self.client.images.build(
            path=context, dockerfile=dockerfile, tag=tag, rm=True, **kwargs,
        )
        lines = [chunk.get("stream", "") for chunk in build_logs if isinstance(chunk, dict)]
        write_log(log_path, f"$ docker build -t {tag} -f {dockerfile} {context}\n", "".join(lines))
        logger.info("Built image %s (%s)", tag, image.short_id)
        return image.short_id

    def force_remove(self, name: str) -> bool:
        """
        Force-remove the container holding ``name``.

        Returns
        -------
        bool
            True if a container was removed, False if none existed.
        """
        try:
            container = self.client.containers.get(name)
        except NotFound:
            return False
        container.remove(force=True)
        logger.info("Removed container %s (%s)", name, container.short_id)
        return True

    def run_container(
        self,
        image: str,
        name: str,
        host_address: str,
        port: int,
        config_path: Optional[str] = None,
        config_mount_path: Optional[str] = None,
    ) -> Container:
        """Start a detached container publishing ``host_address:port:port``."""
        volumes = None
        if config_path:
            volumes = {config_path: {"bind": config_mount_path, "mode": "ro"}}

        logger.info(
            "Starting container %s | image=%s | ports=%s:%d:%d | config=%s",
            name, image, host_address, port, port, config_path or "default",
        )
        return self.client.containers.run(
            image=image,
            name=name,
            ports={f"{port}/tcp": (host_address, port)},
            volumes=volumes,
            labels={"project": "release-gate", "role": "smoke"},
            detach=True,
        )

    def close(self) -> None:
        """Drop the daemon connection; the next call opens a fresh client."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def is_running(self, container: Container) -> bool:
        try:
            container.reload()
        except NotFound:
            return False
        return container.status == "running"

    def container_logs(self, container: Container) -> str:
        try:
            return container.logs(stdout=True, stderr=True).decode("utf-8", errors="replace")
        except APIError as e:
            return f"<logs unavailable: {e}>"
