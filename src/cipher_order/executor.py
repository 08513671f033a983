from typing import Optional, List, Sequence, Tuple
from datetime import datetime, timezone
from urllib.parse import urlparse
import dataclasses
import os
import re
import shutil
import ssl
import subprocess

from .names_and_numbers import ProtocolVersion
from .transcript import ConfigurationError, logger

# Default handshake timeout, in seconds.
DEFAULT_TIMEOUT: float = 10

@dataclasses.dataclass
class ConnectionSettings:
    """
    Settings for a connection to a server, including the host, port, and proxy.
    """
    host: str
    port: int = 443
    proxy: Optional[str] = None
    timeout_in_seconds: Optional[float] = DEFAULT_TIMEOUT
    # Pause before every handshake, to stay under remote abuse detection.
    delay_in_seconds: float = 0
    # STARTTLS sub-protocol, such as "smtp" or "imap".
    starttls: Optional[str] = None
    client_certificate: Optional[str] = None
    extra_args: Sequence[str] = ()
    date: datetime = dataclasses.field(default_factory=lambda: datetime.now(tz=timezone.utc).replace(microsecond=0))

@dataclasses.dataclass
class HandshakeRequest:
    server_name: Optional[str] # No default value because you probably want to set this.
    cipher_expression: str = 'ALL'
    protocol: ProtocolVersion = ProtocolVersion.DEFAULT
    request_ocsp: bool = True
    show_certificates: bool = True

class HandshakeExecutor:
    """
    Performs a single TLS handshake attempt and returns its raw transcript.
    """
    def run(self, connection_settings: ConnectionSettings, request: HandshakeRequest) -> Optional[str]:
        """
        Returns the handshake transcript, or None if the connection failed or timed out.
        """
        raise NotImplementedError()

def find_openssl(name: str = 'openssl') -> str:
    """
    Returns the full path of the openssl binary to use.
    """
    path = shutil.which(name)
    if path is None:
        raise ConfigurationError(f'Could not find an openssl binary named "{name}"')
    return path

def find_trust_anchors() -> Tuple[Optional[str], Optional[str]]:
    """
    Returns the system (CA file, CA path) pair, with None for the missing ones.
    """
    paths = ssl.get_default_verify_paths()
    ca_file = paths.cafile if paths.cafile and os.path.isfile(paths.cafile) else None
    ca_path = paths.capath if paths.capath and os.path.isdir(paths.capath) else None
    if ca_file is None and ca_path is None:
        raise ConfigurationError('No trust anchors found, pass a CA file or CA path explicitly')
    return ca_file, ca_path

def parse_target(target:str, default_port:int = 443) -> tuple[str, int]:
    """
    Parses the target string into a host and port, stripping protocol and path.
    """
    if not re.match(r'\w+://', target):
        # Without a scheme, urlparse will treat the target as a path.
        # Prefix // to make it a netloc.
        url = urlparse('//' + target)
    else:
        url = urlparse(target, scheme='https')
    host = url.hostname or 'localhost'
    port = url.port if url.port else default_port
    return host, port

class OpenSSLExecutor(HandshakeExecutor):
    """
    Runs each handshake with `openssl s_client`.
    """
    def __init__(self, openssl_path: Optional[str] = None, ca_file: Optional[str] = None, ca_path: Optional[str] = None):
        self.openssl_path = find_openssl(openssl_path or 'openssl')
        self.ca_file = ca_file
        self.ca_path = ca_path

    def build_command(self, connection_settings: ConnectionSettings, request: HandshakeRequest) -> List[str]:
        command = [
            self.openssl_path, 's_client',
            '-connect', f'{connection_settings.host}:{connection_settings.port}',
            '-cipher', request.cipher_expression,
        ]
        command.extend(request.protocol.openssl_flags)
        if request.server_name is not None:
            command.extend(['-servername', request.server_name])
        if request.request_ocsp:
            command.append('-status')
        if request.show_certificates:
            command.append('-showcerts')
        if self.ca_file:
            command.extend(['-CAfile', self.ca_file])
        if self.ca_path:
            command.extend(['-CApath', self.ca_path])
        if connection_settings.client_certificate:
            command.extend(['-cert', connection_settings.client_certificate])
        if connection_settings.starttls:
            command.extend(['-starttls', connection_settings.starttls])
        if connection_settings.proxy:
            proxy_host, proxy_port = parse_target(connection_settings.proxy, 80)
            command.extend(['-proxy', f'{proxy_host}:{proxy_port}'])
        command.extend(connection_settings.extra_args)
        return command

    def run(self, connection_settings: ConnectionSettings, request: HandshakeRequest) -> Optional[str]:
        command = self.build_command(connection_settings, request)
        logger.debug(f'Running {" ".join(command)}')
        try:
            # "Q" makes s_client close the connection right after the handshake.
            # Certificate subjects are printed as raw bytes, which need not be UTF-8.
            completed = subprocess.run(command, input='Q\n', capture_output=True, text=True, errors='replace', timeout=connection_settings.timeout_in_seconds)
        except subprocess.TimeoutExpired:
            logger.debug(f'Handshake with {request.protocol!r} timed out after {connection_settings.timeout_in_seconds} seconds')
            return None
        except FileNotFoundError as e:
            raise ConfigurationError(f'Could not run {self.openssl_path}') from e

        if completed.returncode != 0:
            logger.debug(f'openssl exited with {completed.returncode}: {completed.stderr.strip()}')
        return completed.stdout or None
