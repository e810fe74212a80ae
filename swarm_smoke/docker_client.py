"""Docker client factory for the smoke tester.

Most operations go through the Docker Engine SDK. `docker stack` has no
Engine API counterpart (it is implemented in the CLI), so stack deploy and
removal shell out to the docker binary.
"""

import shutil
import subprocess
from typing import Sequence

import docker


def build_docker_client(timeout: int = 120) -> docker.DockerClient:
    """Build a Docker SDK client from the environment.

    Honors DOCKER_HOST, DOCKER_TLS_VERIFY and DOCKER_CERT_PATH the same way
    the docker CLI does.
    """
    return docker.from_env(timeout=timeout)


def run_docker_cli(args: Sequence[str], timeout: float = 120.0) -> subprocess.CompletedProcess:
    """Run a docker CLI command and capture its output.

    Args:
        args: Arguments after the `docker` executable.
        timeout: Seconds before the command is killed.

    Returns:
        The completed process (text mode).

    Raises:
        FileNotFoundError: If the docker binary is not on PATH.
        subprocess.CalledProcessError: If the command exits non-zero.
    """
    executable = shutil.which("docker")
    if executable is None:
        raise FileNotFoundError("docker CLI not found on PATH")

    return subprocess.run(
        [executable, *args],
        check=True,
        capture_output=True,
        text=True,
        timeout=timeout,
    )
