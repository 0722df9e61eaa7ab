"""SSH bastion tunnels.

A tunnel is one authenticated SSH transport plus a loopback listener on an
OS-assigned port. Every accepted local connection gets its own
``direct-tcpip`` channel to the tunnel's fixed remote target, and bytes are
pumped both ways until either side closes.
"""

from __future__ import annotations

import base64
import binascii
import errno
import logging
import os
import select
import socket
import threading
from pathlib import Path
from typing import Any, Callable, Protocol

import paramiko

from .config import AuthMethod, HostKeyMode, TunnelSpec
from .errors import AuthenticationError, ConfigurationError, ConnectivityError, HostKeyError
from .prompt import SecretPrompter

LOG = logging.getLogger(__name__)

PROMPT_RETRIES = 3

BUFFER_SIZE = 32 * 1024

ACCEPT_POLL_SEC = 0.25

KNOWN_HOSTS_FILE = Path.home() / ".ssh" / "known_hosts"

_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key)

_TEMPORARY_ACCEPT_ERRNOS = frozenset(
    {
        errno.EAGAIN,
        errno.EWOULDBLOCK,
        errno.EINTR,
        errno.ECONNABORTED,
        errno.EMFILE,
        errno.ENFILE,
        errno.ENOBUFS,
        errno.ENOMEM,
        errno.EPROTO,
    }
)


class Transport(Protocol):
    """The slice of :class:`paramiko.Transport` a tunnel relies on."""

    def open_channel(self, kind: str, dest_addr: Any = None, src_addr: Any = None) -> Any: ...

    def is_active(self) -> bool: ...

    def close(self) -> None: ...


Dialer = Callable[[TunnelSpec, SecretPrompter], Transport]


def dial_bastion(
    spec: TunnelSpec,
    prompter: SecretPrompter,
    *,
    known_hosts: Path | None = None,
) -> paramiko.Transport:
    """Open, verify and authenticate an SSH transport to the bastion."""

    LOG.info("Dialing bastion", extra={"tunnel": spec.name, "remote": spec.address})
    timeout = spec.connect_timeout
    try:
        sock = socket.create_connection((spec.host, spec.port), timeout=timeout)
    except OSError as exc:
        raise ConnectivityError(f"failed to connect to tunnel '{spec.name}' ({spec.address}): {exc}") from exc

    transport = paramiko.Transport(sock)
    if timeout is not None:
        transport.banner_timeout = timeout
        transport.auth_timeout = timeout
    try:
        try:
            transport.start_client(timeout=timeout)
        except (paramiko.SSHException, EOFError, OSError) as exc:
            raise ConnectivityError(f"failed to connect to tunnel '{spec.name}' ({spec.address}): {exc}") from exc
        verify_host_key(spec, transport.get_remote_server_key(), known_hosts=known_hosts)
        authenticate(transport, spec, prompter)
    except Exception:
        transport.close()
        raise

    banner = transport.get_banner()
    if banner:
        text = banner.decode("utf-8", errors="replace") if isinstance(banner, bytes) else str(banner)
        LOG.info("Bastion banner: %s", text.strip(), extra={"tunnel": spec.name})
    return transport


def verify_host_key(spec: TunnelSpec, key: paramiko.PKey, *, known_hosts: Path | None = None) -> None:
    """Check the bastion's host key according to the tunnel's verification mode."""

    mode = spec.host_key_mode
    if mode is HostKeyMode.INSECURE:
        LOG.warning("Host key verification disabled", extra={"tunnel": spec.name})
        return

    if mode is HostKeyMode.PINNED_KEY:
        expected = read_public_key(expand_path(spec.host_public_key_file or ""))
        if (key.get_name(), key.get_base64()) != expected:
            raise HostKeyError(f"remote public key from '{spec.host}' does not match the pinned host key")
        return

    path = known_hosts or KNOWN_HOSTS_FILE
    try:
        host_keys = paramiko.HostKeys(str(path))
    except OSError as exc:
        raise HostKeyError(f"could not read known_hosts '{path}': {exc}") from exc

    for name in _known_host_names(spec.host, spec.port):
        entry = host_keys.lookup(name)
        if entry is None:
            continue
        known = entry.get(key.get_name())
        if known is not None and known.asbytes() == key.asbytes():
            return
        raise HostKeyError(f"remote public key from '{spec.host}' does not match known public key")
    raise HostKeyError(f"'{spec.address}' is an unknown host")


def read_public_key(path: Path) -> tuple[str, str]:
    """Parse an OpenSSH public key file into ``(key type, base64 blob)``."""

    try:
        fields = path.read_text().split()
    except OSError as exc:
        raise HostKeyError(f"could not read expected host public key '{path}': {exc}") from exc
    # tolerate a known_hosts style line with a leading host pattern
    if len(fields) >= 3 and not _looks_like_key_type(fields[0]):
        fields = fields[1:]
    if len(fields) < 2:
        raise HostKeyError(f"invalid host public key '{path}'")
    key_type, blob = fields[0], fields[1]
    try:
        base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HostKeyError(f"invalid host public key '{path}': {exc}") from exc
    return key_type, blob


def authenticate(transport: paramiko.Transport, spec: TunnelSpec, prompter: SecretPrompter) -> None:
    """Authenticate ``transport`` with the tunnel's credential strategy."""

    try:
        if spec.auth_method is AuthMethod.PASSWORD:
            _auth_password(transport, spec, prompter)
        elif spec.auth_method is AuthMethod.PUBLIC_KEY:
            transport.auth_publickey(spec.user, load_private_key(spec, prompter))
        else:
            _auth_agent(transport, spec)
    except paramiko.AuthenticationException as exc:
        raise AuthenticationError(
            f"tunnel '{spec.name}': authentication as '{spec.user}' was rejected: {exc}"
        ) from exc
    except (paramiko.SSHException, EOFError, OSError) as exc:
        raise ConnectivityError(f"tunnel '{spec.name}': connection lost during authentication: {exc}") from exc
    if not transport.is_authenticated():
        raise AuthenticationError(f"tunnel '{spec.name}': authentication as '{spec.user}' did not complete")


def load_private_key(spec: TunnelSpec, prompter: SecretPrompter) -> paramiko.PKey:
    """Load the tunnel's private key, prompting for a passphrase when it is encrypted."""

    path = expand_path(spec.private_key_file or "")
    if not path.is_file():
        raise AuthenticationError(f"could not read private key file '{path}'")
    try:
        return _load_key_file(path, spec.private_key_passphrase or None)
    except paramiko.PasswordRequiredException:
        pass
    except (paramiko.SSHException, ValueError) as exc:
        raise AuthenticationError(f"could not decrypt private key '{path}': {exc}") from exc

    last_error: Exception | None = None
    for attempt in range(1, PROMPT_RETRIES + 1):
        try:
            answers = prompter(spec.host, "private key is encrypted", ["private key passphrase: "], [False])
        except Exception as exc:
            LOG.warning("Passphrase prompt failed", extra={"tunnel": spec.name, "attempt": attempt})
            last_error = exc
            continue
        try:
            return _load_key_file(path, answers[0])
        except (paramiko.SSHException, ValueError) as exc:
            LOG.warning("Private key passphrase rejected", extra={"tunnel": spec.name, "attempt": attempt})
            last_error = exc
    raise AuthenticationError(f"could not decrypt private key '{path}': {last_error}") from last_error


def expand_path(value: str) -> Path:
    return Path(os.path.expandvars(value)).expanduser()


def _load_key_file(path: Path, passphrase: str | None) -> paramiko.PKey:
    last_error: Exception | None = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key_file(str(path), password=passphrase)
        except paramiko.PasswordRequiredException:
            raise
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise paramiko.SSHException(f"unsupported or undecryptable private key: {last_error}")


def _auth_password(transport: paramiko.Transport, spec: TunnelSpec, prompter: SecretPrompter) -> None:
    if spec.password:
        transport.auth_password(spec.user, spec.password)
        return

    label = f"{spec.user}@{spec.host}"
    prompt_error: Exception | None = None

    def _handler(title: str, instructions: str, prompt_list: list[tuple[str, bool]]) -> list[str]:
        nonlocal prompt_error
        if not prompt_list:
            return []
        questions = [prompt for prompt, _ in prompt_list]
        echos = [bool(echo) for _, echo in prompt_list]
        try:
            return list(prompter(title or label, instructions, questions, echos))
        except Exception as exc:
            # answer nothing so the server ends this attempt without a guessed secret
            prompt_error = exc
            return []

    def _interactive() -> None:
        try:
            transport.auth_interactive(spec.user, _handler)
        except paramiko.AuthenticationException:
            if prompt_error is None:
                raise
        if prompt_error is not None:
            raise AuthenticationError(
                f"tunnel '{spec.name}': prompt for '{spec.user}' failed: {prompt_error!r}"
            ) from prompt_error

    def _password() -> None:
        try:
            answers = prompter(label, "", ["password: "], [False])
        except Exception as exc:
            raise AuthenticationError(
                f"tunnel '{spec.name}': could not read password for '{spec.user}': {exc!r}"
            ) from exc
        if not answers:
            raise AuthenticationError(f"tunnel '{spec.name}': no password provided for '{spec.user}'")
        transport.auth_password(spec.user, answers[0])

    try:
        _with_retries(_interactive, spec)
    except paramiko.BadAuthenticationType as exc:
        if "password" not in (exc.allowed_types or []):
            raise
        _with_retries(_password, spec)


def _auth_agent(transport: paramiko.Transport, spec: TunnelSpec) -> None:
    agent = paramiko.Agent()
    try:
        keys = agent.get_keys()
        last_error: paramiko.AuthenticationException | None = None
        for key in keys:
            try:
                transport.auth_publickey(spec.user, key)
                return
            except paramiko.BadAuthenticationType:
                raise
            except paramiko.AuthenticationException as exc:
                last_error = exc
        if last_error is None:
            raise AuthenticationError(
                f"tunnel '{spec.name}': no keys available from the SSH agent (is SSH_AUTH_SOCK set?)"
            )
        raise last_error
    finally:
        agent.close()


def _with_retries(attempt: Callable[[], object], spec: TunnelSpec) -> None:
    """Run ``attempt`` until it succeeds, failing after PROMPT_RETRIES rejections."""

    last_error: paramiko.AuthenticationException | None = None
    for number in range(1, PROMPT_RETRIES + 1):
        try:
            attempt()
            return
        except paramiko.BadAuthenticationType:
            raise
        except paramiko.AuthenticationException as exc:
            LOG.warning("Authentication attempt rejected", extra={"tunnel": spec.name, "attempt": number})
            last_error = exc
    if last_error is None:
        raise AuthenticationError(f"tunnel '{spec.name}': no authentication attempt was made")
    raise last_error


def _known_host_names(host: str, port: int) -> tuple[str, ...]:
    if port == 22:
        return (host,)
    return (f"[{host}]:{port}", host)


def _looks_like_key_type(value: str) -> bool:
    return value.startswith(("ssh-", "ecdsa-", "sk-"))


class Tunnel:
    """A live transport plus the local listener forwarding into it."""

    def __init__(
        self,
        name: str,
        transport: Transport,
        remote_host: str,
        remote_port: int,
        *,
        bind_host: str = "127.0.0.1",
    ) -> None:
        self.name = name
        self._transport = transport
        self._remote = (remote_host, remote_port)
        self._listener = socket.create_server((bind_host, 0))
        self._listener.settimeout(ACCEPT_POLL_SEC)
        self._local = self._listener.getsockname()[:2]
        self._connections: set[Any] = set()
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._accept_thread = threading.Thread(
            target=self._accept_loop,
            name=f"bastionsql-tunnel-{name}",
            daemon=True,
        )
        self._accept_thread.start()

    @property
    def local_address(self) -> tuple[str, int]:
        return self._local[0], int(self._local[1])

    @property
    def remote_address(self) -> tuple[str, int]:
        return self._remote

    @property
    def alive(self) -> bool:
        """False once closed, once the accept loop died, or once the transport dropped."""

        return (
            not self._closed.is_set()
            and self._accept_thread.is_alive()
            and self._transport.is_active()
        )

    @property
    def tracked_connections(self) -> int:
        with self._lock:
            return len(self._connections)

    def close(self) -> None:
        """Close forwarded connections, then the listener, then the transport."""

        if self._closed.is_set():
            return
        self._closed.set()
        errors: list[Exception] = []
        with self._lock:
            for conn in tuple(self._connections):
                try:
                    _shutdown(conn)
                    conn.close()
                except Exception as exc:
                    errors.append(exc)
            self._connections.clear()
        try:
            self._listener.close()
        except OSError as exc:
            errors.append(exc)
        self._accept_thread.join(timeout=ACCEPT_POLL_SEC * 4)
        try:
            self._transport.close()
        except Exception as exc:
            errors.append(exc)
        LOG.info("Closed tunnel", extra={"tunnel": self.name})
        if errors:
            raise ConnectivityError(f"tunnel '{self.name}' did not close cleanly: {errors[0]}") from errors[0]

    def _accept_loop(self) -> None:
        while not self._closed.is_set():
            try:
                local, peer = self._listener.accept()
            except TimeoutError:
                continue
            except OSError as exc:
                if self._closed.is_set():
                    return
                if exc.errno in _TEMPORARY_ACCEPT_ERRNOS:
                    LOG.warning("Error accepting tunnel connection", extra={"tunnel": self.name}, exc_info=exc)
                    self._closed.wait(ACCEPT_POLL_SEC)
                    continue
                LOG.error("Tunnel accept loop stopped", extra={"tunnel": self.name}, exc_info=exc)
                return
            if not self._track(local):
                _close_quietly(local)
                return
            threading.Thread(
                target=self._forward,
                args=(local, peer),
                name=f"bastionsql-forward-{self.name}",
                daemon=True,
            ).start()

    def _forward(self, local: socket.socket, peer: tuple[str, int]) -> None:
        try:
            channel = self._transport.open_channel("direct-tcpip", self._remote, peer)
        except (paramiko.SSHException, EOFError, OSError) as exc:
            LOG.warning(
                "Could not establish remote connection through tunnel",
                extra={"tunnel": self.name, "remote": self._remote, "peer": peer, "error": str(exc)},
            )
            self._untrack(local)
            _close_quietly(local)
            return
        if not self._track(channel):
            _close_quietly(channel)
            return
        LOG.debug("Forwarding connection", extra={"tunnel": self.name, "peer": peer})
        try:
            _pump(local, channel)
        except (OSError, ValueError, EOFError, paramiko.SSHException) as exc:
            if not self._closed.is_set():
                LOG.warning(
                    "Forwarded connection failed",
                    extra={"tunnel": self.name, "peer": peer, "error": str(exc)},
                )
        finally:
            self._untrack(local, channel)
            _close_quietly(channel)
            _close_quietly(local)
            LOG.debug("Forwarded connection closed", extra={"tunnel": self.name, "peer": peer})

    def _track(self, conn: Any) -> bool:
        with self._lock:
            if self._closed.is_set():
                return False
            self._connections.add(conn)
            return True

    def _untrack(self, *conns: Any) -> None:
        with self._lock:
            for conn in conns:
                self._connections.discard(conn)


def _pump(local: socket.socket, channel: Any) -> None:
    """Copy bytes both ways until either side reaches end of stream."""

    while True:
        readable, _, _ = select.select([local, channel], [], [])
        if local in readable:
            data = local.recv(BUFFER_SIZE)
            if not data:
                return
            channel.sendall(data)
        if channel in readable:
            data = channel.recv(BUFFER_SIZE)
            if not data:
                return
            local.sendall(data)


def _shutdown(conn: Any) -> None:
    # wakes pump threads blocked in select on this connection
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except OSError:
        LOG.debug("Forwarded connection already shut down", exc_info=True)


def _close_quietly(conn: Any) -> None:
    try:
        conn.close()
    except Exception:  # pragma: no cover - best effort cleanup
        LOG.debug("Ignoring error while closing forwarded connection", exc_info=True)


class TunnelManager:
    """Caches one live tunnel per tunnel name."""

    def __init__(self, *, dialer: Dialer | None = None) -> None:
        self._dialer: Dialer = dialer or dial_bastion
        self._tunnels: dict[str, Tunnel] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._tunnels

    def __len__(self) -> int:
        return len(self._tunnels)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._tunnels)

    def get(self, name: str) -> Tunnel | None:
        return self._tunnels.get(name)

    def open(
        self,
        spec: TunnelSpec,
        prompter: SecretPrompter,
        remote_host: str,
        remote_port: int,
    ) -> Tunnel:
        """Return the live tunnel for ``spec.name``, dialing it on first use."""

        tunnel = self._tunnels.get(spec.name)
        if tunnel is not None:
            if tunnel.alive:
                if tunnel.remote_address != (remote_host, remote_port):
                    host, port = tunnel.remote_address
                    raise ConfigurationError(
                        f"tunnel '{spec.name}' already forwards to {host}:{port}; "
                        f"cannot also reach {remote_host}:{remote_port}"
                    )
                LOG.debug("Reusing tunnel", extra={"tunnel": spec.name})
                return tunnel
            LOG.warning("Replacing dead tunnel", extra={"tunnel": spec.name})
            self.close(spec.name)

        transport = self._dialer(spec, prompter)
        try:
            tunnel = Tunnel(spec.name, transport, remote_host, remote_port)
        except OSError as exc:
            transport.close()
            raise ConnectivityError(f"could not open local port for tunnel '{spec.name}': {exc}") from exc
        self._tunnels[spec.name] = tunnel
        LOG.info(
            "Tunnel established",
            extra={"tunnel": spec.name, "local": tunnel.local_address, "remote": tunnel.remote_address},
        )
        return tunnel

    def close(self, name: str) -> Exception | None:
        """Tear down one tunnel; a failure is logged and returned, never raised."""

        tunnel = self._tunnels.pop(name, None)
        if tunnel is None:
            return None
        try:
            tunnel.close()
        except Exception as exc:
            LOG.warning("Failed to close tunnel", extra={"tunnel": name}, exc_info=exc)
            return exc
        return None

    def close_all(self) -> list[Exception]:
        errors: list[Exception] = []
        for name in tuple(self._tunnels):
            error = self.close(name)
            if error is not None:
                errors.append(error)
        return errors


__all__ = [
    "Dialer",
    "KNOWN_HOSTS_FILE",
    "PROMPT_RETRIES",
    "Transport",
    "Tunnel",
    "TunnelManager",
    "authenticate",
    "dial_bastion",
    "load_private_key",
    "read_public_key",
    "verify_host_key",
]
