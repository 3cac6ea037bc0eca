"""
Remote Actuation Channel - command execution over SSH.

Opens an authenticated asyncssh session to a host and runs a sequence of
structured commands as one remote invocation. Nothing here retries: every
failure is surfaced to the caller as a single error.
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import asyncssh

from errors import AuthenticationError, CredentialsError, DialError, ExecutionError

logger = logging.getLogger(__name__)

DEFAULT_SSH_PORT = 22
MAX_PORT = 65535
COMMAND_SEPARATOR = " && "

# RFC 4254 terminal mode opcodes
PTY_ECHO = 53
PTY_OP_ISPEED = 128
PTY_OP_OSPEED = 129

TERMINAL_TYPE = "xterm"
TERMINAL_SIZE = (80, 40)
TERMINAL_MODES = {
    PTY_ECHO: 0,
    PTY_OP_ISPEED: 14400,
    PTY_OP_OSPEED: 14400,
}


@dataclass(frozen=True)
class Command:
    """A program and its arguments, rendered with shell quoting."""

    program: str
    args: Tuple[str, ...] = ()

    def render(self) -> str:
        return shlex.join([self.program, *self.args])


def list_path(path: str) -> Command:
    """Succeeds only if ``path`` exists."""
    return Command("ls", ("-d", "--", path))


def touch(path: str) -> Command:
    return Command("touch", ("--", path))


def remove(path: str) -> Command:
    """Removes ``path``; succeeds if it is already absent."""
    return Command("rm", ("-f", "--", path))


def render_commands(commands: Sequence[Command]) -> str:
    """Join commands so that the first failing one fails the invocation."""
    if not commands:
        raise ValueError("At least one command is required")
    return COMMAND_SEPARATOR.join(command.render() for command in commands)


def _parse_port(raw: str) -> int:
    port = int(raw)
    if not 0 < port <= MAX_PORT:
        raise ValueError(f"Port {port} is out of range 1-{MAX_PORT}")
    return port


def split_address(address: str, default_port: int = DEFAULT_SSH_PORT) -> Tuple[str, int]:
    """
    Split ``host``, ``host:port`` or ``[v6addr]:port`` into host and port.

    Raises:
        ValueError: If the address is empty or the port is not a number
            in 1-65535.
    """
    address = address.strip()
    if not address:
        raise ValueError("Address cannot be empty")

    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        if not rest:
            return host, default_port
        if not rest.startswith(":"):
            raise ValueError(f"Invalid address: {address}")
        return host, _parse_port(rest[1:])

    # A bare IPv6 literal has more than one colon
    if address.count(":") == 1:
        host, port = address.split(":")
        if not host:
            raise ValueError(f"Invalid address: {address}")
        return host, _parse_port(port)

    return address, default_port


@dataclass(frozen=True)
class Credentials:
    """Address and principal/secret for one remote host."""

    address: str
    username: str
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)


class SSHConnection:
    """
    An open SSH session owned by a single reconcile pass.

    Use as an async context manager so the session is closed when the pass
    ends, including when it is cancelled.
    """

    def __init__(
        self,
        conn: asyncssh.SSHClientConnection,
        address: str,
        command_timeout: Optional[float] = 60,
    ):
        self._conn = conn
        self.address = address
        self.command_timeout = command_timeout

    async def execute(self, commands: Sequence[Command]) -> bytes:
        """
        Run ``commands`` as one remote invocation.

        Returns:
            The raw combined output of the invocation.

        Raises:
            ExecutionError: On non-zero exit status, channel failure or timeout.
        """
        command_line = render_commands(commands)
        logger.debug(f"Executing on {self.address}: {command_line}")

        try:
            result = await self._conn.run(
                command_line,
                check=True,
                encoding=None,
                term_type=TERMINAL_TYPE,
                term_size=TERMINAL_SIZE,
                term_modes=TERMINAL_MODES,
                timeout=self.command_timeout,
            )
        except asyncssh.ProcessError as e:
            output = e.stdout if isinstance(e.stdout, bytes) else b""
            if e.exit_status is None:
                detail = "no exit status (timed out or interrupted)"
            else:
                detail = f"exit status {e.exit_status}"
            raise ExecutionError(
                f"failed to execute command '{command_line}' on {self.address}: "
                f"{detail}",
                output=output,
            ) from e
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            raise ExecutionError(
                f"failed to execute command '{command_line}' on {self.address}: {e}"
            ) from e

        stdout = result.stdout
        return stdout if isinstance(stdout, bytes) else b""

    async def close(self) -> None:
        self._conn.close()
        await self._conn.wait_closed()

    async def __aenter__(self) -> "SSHConnection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


async def connect(
    credentials: Credentials,
    connect_timeout: Optional[float] = 30,
    command_timeout: Optional[float] = 60,
    known_hosts: Optional[str] = None,
) -> SSHConnection:
    """
    Open an authenticated session to ``credentials.address``.

    Host key checking is disabled unless ``known_hosts`` names a file.

    Raises:
        CredentialsError: If the address or private key cannot be parsed.
        AuthenticationError: If the host rejects the credentials.
        DialError: If the host cannot be reached within ``connect_timeout``.
    """
    try:
        host, port = split_address(credentials.address)
    except ValueError as e:
        raise CredentialsError(f"invalid address '{credentials.address}': {e}") from e

    connect_kwargs = {
        "host": host,
        "port": port,
        "username": credentials.username,
        "known_hosts": known_hosts,
        "connect_timeout": connect_timeout,
    }
    if credentials.private_key:
        try:
            connect_kwargs["client_keys"] = [
                asyncssh.import_private_key(credentials.private_key)
            ]
        except asyncssh.KeyImportError as e:
            raise CredentialsError(f"cannot parse private key: {e}") from e
    else:
        connect_kwargs["client_keys"] = None
    if credentials.password:
        connect_kwargs["password"] = credentials.password

    try:
        conn = await asyncssh.connect(**connect_kwargs)
    except asyncssh.PermissionDenied as e:
        raise AuthenticationError(
            f"authentication rejected by {host}:{port} for user {credentials.username}"
        ) from e
    except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
        raise DialError(f"cannot connect to {host}:{port}: {e}") from e

    logger.info(f"Connected to {host}:{port} as {credentials.username}")
    return SSHConnection(conn, f"{host}:{port}", command_timeout=command_timeout)
