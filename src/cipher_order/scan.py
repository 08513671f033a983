from enum import Enum
from multiprocessing.pool import ThreadPool
from typing import Iterable, Union, List, Optional, Sequence, Callable, Any, Set, Tuple
import dataclasses
import time
from datetime import datetime

from .names_and_numbers import ProtocolVersion, PROTOCOL_SWEEP
from .transcript import HandshakeResult, ScanError, parse_transcript, logger
from .certificates import CertificateRegistry, CertificateRecord
from .executor import ConnectionSettings, HandshakeRequest, HandshakeExecutor, OpenSSLExecutor, find_trust_anchors, parse_target

# Default number of workers/threads/concurrent connections to use.
# Probes are strictly sequential unless more workers are requested.
DEFAULT_MAX_WORKERS: int = 1

DEFAULT_CIPHER_EXPRESSION = 'ALL'
ALL_CIPHERS_EXPRESSION = 'ALL:COMPLEMENTOFALL'

class RoundOutcome(Enum):
    ACCEPTED = 'accepted'
    # A protocol was negotiated, but the server refused every offered cipher.
    REJECTED = 'rejected'
    # No protocol produced a handshake. Includes timeouts.
    CONNECTION_FAILURE = 'connection failure'
    # The server picked a cipher that was explicitly excluded.
    REPEATED_CIPHER = 'repeated cipher'

@dataclasses.dataclass
class RoundResult:
    outcome: RoundOutcome
    result: HandshakeResult

@dataclasses.dataclass
class ServerScanResult:
    connection: ConnectionSettings
    # Accepted ciphers, in server preference order.
    ciphers: List[HandshakeResult]
    server_side_ordering: bool
    termination: RoundOutcome
    certificates: List[CertificateRecord]
    heterogeneous_certificates: bool

def probe_handshake(executor: HandshakeExecutor, connection_settings: ConnectionSettings, request: HandshakeRequest, registry: CertificateRegistry) -> HandshakeResult:
    """
    Runs one handshake, parses it, and registers the certificates the server presented.
    """
    if connection_settings.delay_in_seconds:
        time.sleep(connection_settings.delay_in_seconds)

    if request.protocol == ProtocolVersion.SSLv2 and request.server_name is not None:
        # SSLv2 Client Hellos have no extensions, so no SNI.
        request = dataclasses.replace(request, server_name=None)

    logger.debug(f'Offering "{request.cipher_expression}" over {request.protocol!r}')
    result, certificates = parse_transcript(executor.run(connection_settings, request))
    if certificates:
        result.certificate_fingerprints = [record.fingerprint_sha256 for record in registry.register_chain(certificates)]
    return result

def reduce_round(results: Iterable[HandshakeResult]) -> RoundResult:
    """
    Combines the handshakes of one round, in sweep order, into the round's selected cipher and the
    protocols that selected it.
    """
    selected: Optional[HandshakeResult] = None
    protocols: Set[str] = set()
    rejected = False
    for result in results:
        if not result.protocols or not result.accepted:
            rejected = rejected or bool(result.protocols)
            continue
        if selected is not None and selected.cipher_name != result.cipher_name:
            # Protocol versions disagree on the cipher, so the expression was ambiguous. Keep only the latest.
            logger.debug(f'{result.protocols} selected {result.cipher_name} instead of {selected.cipher_name}, discarding {protocols}')
            protocols = set()
        protocols = protocols | result.protocols
        selected = result

    if selected is None:
        return RoundResult(RoundOutcome.REJECTED if rejected else RoundOutcome.CONNECTION_FAILURE, HandshakeResult())
    return RoundResult(RoundOutcome.ACCEPTED, dataclasses.replace(selected, protocols=protocols))

def probe_round(
    executor: HandshakeExecutor,
    connection_settings: ConnectionSettings,
    request: HandshakeRequest,
    registry: CertificateRegistry,
    protocols: Sequence[ProtocolVersion] = PROTOCOL_SWEEP,
    pool: Optional[ThreadPool] = None,
    ) -> RoundResult:
    """
    Offers the same cipher expression over every protocol in `protocols`.
    """
    requests = [dataclasses.replace(request, protocol=protocol) for protocol in protocols]
    probe = lambda r: probe_handshake(executor, connection_settings, r, registry)
    # `map` keeps results in sweep order even when handshakes run concurrently.
    results = pool.map(probe, requests) if pool else [probe(r) for r in requests]
    return reduce_round(results)

def build_cipher_expression(base: str, excluded: Sequence[str]) -> str:
    """
    Excludes the given ciphers from the `base` expression, and also pushes them to the end of the list
    for servers that only honor one of the two.
    """
    if not excluded:
        return base
    return ':'.join([f'!{cipher}' for cipher in excluded] + [base] + [f'+{cipher}' for cipher in excluded])

def enumerate_cipher_preference(
    executor: HandshakeExecutor,
    connection_settings: ConnectionSettings,
    request: HandshakeRequest,
    registry: CertificateRegistry,
    protocols: Sequence[ProtocolVersion] = PROTOCOL_SWEEP,
    pool: Optional[ThreadPool] = None,
    on_result: Callable[[HandshakeResult], None] = lambda r: None,
    ) -> Tuple[List[HandshakeResult], RoundOutcome]:
    """
    Repeatedly offers `request.cipher_expression` minus every cipher found so far, until the server
    accepts none. Returns the accepted ciphers in preference order and the outcome of the final round.
    """
    preference: List[HandshakeResult] = []
    excluded: List[str] = []

    logger.info(f'Enumerating cipher preference of {connection_settings.host}:{connection_settings.port} from "{request.cipher_expression}"')

    while True:
        round_request = dataclasses.replace(request, cipher_expression=build_cipher_expression(request.cipher_expression, excluded))
        round_result = probe_round(executor, connection_settings, round_request, registry, protocols, pool)

        if round_result.outcome != RoundOutcome.ACCEPTED:
            logger.info(f'Found {len(preference)} ciphers, last round ended with {round_result.outcome.value}')
            return preference, round_result.outcome

        cipher = round_result.result.cipher_name
        if cipher is None or cipher in excluded:
            logger.warning(f'Server selected {cipher} even though it was excluded, stopping enumeration')
            return preference, RoundOutcome.REPEATED_CIPHER

        logger.info(f'Found cipher {cipher} over {sorted(round_result.result.protocols)}')
        preference.append(round_result.result)
        excluded.append(cipher)
        on_result(round_result.result)

def detect_server_side_ordering(
    executor: HandshakeExecutor,
    connection_settings: ConnectionSettings,
    request: HandshakeRequest,
    preference: Sequence[HandshakeResult],
    registry: CertificateRegistry,
    protocols: Sequence[ProtocolVersion] = PROTOCOL_SWEEP,
    pool: Optional[ThreadPool] = None,
    ) -> bool:
    """
    Offers the top ciphers in reverse order. If the server still doesn't pick the one now offered first,
    it's enforcing its own order.
    """
    if len(preference) < 2:
        # Nothing to order.
        return True

    # Two ciphers are not enough for servers that special-case a few high priority ciphers.
    offered = [result.cipher_name for result in reversed(preference[:3])]
    round_request = dataclasses.replace(request, cipher_expression=':'.join(offered))
    logger.debug(f'Testing server cipher order with "{round_request.cipher_expression}"')
    round_result = probe_round(executor, connection_settings, round_request, registry, protocols, pool)

    if round_result.outcome != RoundOutcome.ACCEPTED:
        return True
    return round_result.result.cipher_name != offered[0]

def has_heterogeneous_certificates(preference: Sequence[HandshakeResult]) -> bool:
    """
    True if different ciphers were served with different leaf certificate metadata.
    Only a hint for display, servers with several certificates are legitimate.
    """
    leaf_metadata = {
        (result.public_key_bits, result.signature_algorithm, result.certificate_fingerprints[0] if result.certificate_fingerprints else None)
        for result in preference if result.accepted
    }
    return len(leaf_metadata) > 1

def scan_server(
    connection_settings: Union[ConnectionSettings, str],
    request: Optional[HandshakeRequest] = None,
    executor: Optional[HandshakeExecutor] = None,
    registry: Optional[CertificateRegistry] = None,
    all_ciphers: bool = False,
    protocols: Sequence[ProtocolVersion] = PROTOCOL_SWEEP,
    max_workers: int = DEFAULT_MAX_WORKERS,
    on_result: Callable[[HandshakeResult], None] = lambda r: None,
    ) -> ServerScanResult:
    """
    Finds the ciphers accepted by a server in its order of preference, and whether the server or the
    client decides which one is used.

    Runs the handshakes of each round with up to `max_workers` threads connecting at the same time.
    """
    if isinstance(connection_settings, str):
        connection_settings = ConnectionSettings(*parse_target(connection_settings))

    logger.info(f"Scanning {connection_settings.host}:{connection_settings.port}")

    if not request:
        request = HandshakeRequest(
            server_name=connection_settings.host,
            cipher_expression=ALL_CIPHERS_EXPRESSION if all_ciphers else DEFAULT_CIPHER_EXPRESSION,
        )

    if executor is None or registry is None:
        # Fails before the first handshake when the system has no CA store.
        ca_file, ca_path = find_trust_anchors()
        if executor is None:
            executor = OpenSSLExecutor(ca_file=ca_file, ca_path=ca_path)
        if registry is None:
            registry = CertificateRegistry(ca_file=ca_file, ca_path=ca_path)

    with ThreadPool(max_workers) as pool:
        preference, termination = enumerate_cipher_preference(executor, connection_settings, request, registry, protocols, pool, on_result)
        server_side_ordering = detect_server_side_ordering(executor, connection_settings, request, preference, registry, protocols, pool)

    return ServerScanResult(
        connection=connection_settings,
        ciphers=preference,
        server_side_ordering=server_side_ordering,
        termination=termination,
        certificates=registry.records,
        heterogeneous_certificates=has_heterogeneous_certificates(preference),
    )

def to_json_obj(o: Any) -> Any:
    """
    Converts an object to a JSON-serializable structure, replacing dataclasses, enums, sets, datetimes, etc.
    """
    if isinstance(o, dict):
        return {to_json_obj(key): to_json_obj(value) for key, value in o.items()}
    elif dataclasses.is_dataclass(o):
        return to_json_obj(dataclasses.asdict(o))
    elif isinstance(o, (set, frozenset)):
        return sorted(to_json_obj(item) for item in o)
    elif isinstance(o, (tuple, list)):
        return [to_json_obj(item) for item in o]
    elif isinstance(o, Enum):
        return o.name
    elif isinstance(o, datetime):
        return o.isoformat(' ')
    return o
