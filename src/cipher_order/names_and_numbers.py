from enum import Enum
from typing import List

# Cipher name printed by `openssl s_client` when the server refused every offered cipher.
NO_CIPHER_MARKER = '(NONE)'

# `openssl s_client -status` wraps the OCSP response in a pair of these lines.
OCSP_BLOCK_MARKER = '======================================'

PEM_BEGIN = '-----BEGIN CERTIFICATE-----'
PEM_END = '-----END CERTIFICATE-----'

class ProtocolVersion(Enum):
    """
    Protocol selectors for a single handshake. The value is the `openssl s_client` flag.
    """
    SSLv2 = '-ssl2'
    # Let the client pick its highest version, minus TLS 1.3 whose suites ignore `-cipher`.
    DEFAULT = '-no_tls1_3'
    TLS1_2 = '-tls1_2'
    TLS1_1 = '-tls1_1'
    TLS1_0 = '-tls1'
    SSLv3 = '-ssl3'

    def __repr__(self):
        return self.name

    @property
    def openssl_flags(self) -> List[str]:
        return [self.value]

# Sweep order for every enumeration round. SSLv2 goes first so that servers speaking only
# legacy protocols are detected before the round gives up, then the client default, then descending.
PROTOCOL_SWEEP = (
    ProtocolVersion.SSLv2,
    ProtocolVersion.DEFAULT,
    ProtocolVersion.TLS1_2,
    ProtocolVersion.TLS1_1,
    ProtocolVersion.TLS1_0,
    ProtocolVersion.SSLv3,
)
