"""Web server collaborator: graceful reload after the live pointer moves."""

import logging
import shlex
from typing import Self

from .models import TargetHost
from .remote import RemoteChannel, RemoteCommand

logger = logging.getLogger(__name__)


class WebServer:
    """Signals the host's web server to pick up a new live pointer."""

    def reload(self: Self, host: TargetHost) -> None:
        raise NotImplementedError


class NullReloader(WebServer):
    """For servers that resolve the pointer per request without a reload."""

    def reload(self: Self, host: TargetHost) -> None:
        logger.debug("No reload configured for %s", host.name)


class CommandReloader(WebServer):
    """Runs a graceful reload command (never a restart) on the host."""

    def __init__(self: Self, channel: RemoteChannel, command: str = "sudo systemctl reload nginx") -> None:
        self.channel = channel
        self.argv = shlex.split(command)

    def reload(self: Self, host: TargetHost) -> None:
        logger.info("Reloading web server on %s", host.name)
        self.channel.run(host, RemoteCommand.of("reload", *self.argv))


def build_webserver(channel: RemoteChannel, reload_command: str) -> WebServer:
    if not reload_command.strip():
        return NullReloader()
    return CommandReloader(channel, reload_command)
