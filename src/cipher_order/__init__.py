from .names_and_numbers import ProtocolVersion, PROTOCOL_SWEEP
from .transcript import ScanError, ConfigurationError, HandshakeResult, parse_transcript
from .certificates import CertificateRegistry, CertificateRecord, CertificateStoreError
from .executor import ConnectionSettings, HandshakeRequest, HandshakeExecutor, OpenSSLExecutor, find_openssl, find_trust_anchors, parse_target
from .scan import (
    scan_server, enumerate_cipher_preference, detect_server_side_ordering, probe_round, reduce_round,
    build_cipher_expression, has_heterogeneous_certificates, to_json_obj,
    RoundOutcome, RoundResult, ServerScanResult, DEFAULT_MAX_WORKERS,
)
