"""
Container Instance Model
========================
Pydantic model for the server container started by one smoke run.

Fields:
    name            — fixed instance name, reused across runs
    image           — image reference the instance was started from
    host_address    — host interface the port is published on
    port            — published port (host port == container port)
    config_path     — host config file bind-mounted into the container (None for default config)
    state           — created / running / probed / removed
    container_id    — short docker id once started
    label           — smoke run label ("default" or "with-config")

Exactly one instance holds a given name at a time: the controller force-removes
any previous holder before starting a new one.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class ContainerState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    PROBED = "probed"
    REMOVED = "removed"


class ContainerInstance(BaseModel):
    name: str
    image: str
    host_address: str
    port: int
    config_path: Optional[str] = None
    state: ContainerState = ContainerState.CREATED
    container_id: str = ""
    label: str = ""
    probe_passed: bool = False

    @property
    def port_mapping(self) -> str:
        return f"{self.host_address}:{self.port}:{self.port}"
