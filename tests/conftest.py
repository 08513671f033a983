from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from cipher_order import HandshakeExecutor, ProtocolVersion
from cipher_order import scan

def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])

def make_certificate(common_name: str, issuer_name: Optional[str] = None, issuer_key=None, is_ca: bool = False):
    """ Returns (pem, private key) for a certificate signed by `issuer_key`, or self-signed. """
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(tz=timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(_name(issuer_name or common_name))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key((issuer_key or key).public_key()), critical=False)
    )
    if is_ca:
        builder = builder.add_extension(x509.KeyUsage(
            digital_signature=True, content_commitment=False, key_encipherment=False, data_encipherment=False,
            key_agreement=False, key_cert_sign=True, crl_sign=True, encipher_only=False, decipher_only=False,
        ), critical=True)
    certificate = builder.sign(issuer_key or key, hashes.SHA256())
    return certificate.public_bytes(serialization.Encoding.PEM).decode('ascii'), key

class Pki:
    def __init__(self, tmp_path):
        self.root, root_key = make_certificate('Test Root CA', is_ca=True)
        self.intermediate, intermediate_key = make_certificate('Test Intermediate CA', 'Test Root CA', root_key, is_ca=True)
        self.leaf, _ = make_certificate('example.com', 'Test Intermediate CA', intermediate_key)
        self.other_leaf, _ = make_certificate('other.example.com', 'Test Intermediate CA', intermediate_key)
        self.ca_file = str(tmp_path / 'roots.pem')
        with open(self.ca_file, 'w') as f:
            f.write(self.root)

@pytest.fixture(autouse=True)
def no_system_trust_anchors(monkeypatch):
    """ Keeps scans that build their own registry away from the host CA store. """
    monkeypatch.setattr(scan, 'find_trust_anchors', lambda: (None, None))

@pytest.fixture
def pki(tmp_path) -> Pki:
    return Pki(tmp_path)

def make_transcript(cipher: Optional[str], protocol: Optional[str] = 'TLSv1.2', certificates: Sequence[str] = (), public_key_bits: int = 256, verify_code: int = 0) -> str:
    """ Builds `openssl s_client -showcerts -status` style output. """
    lines: List[str] = ['CONNECTED(00000003)', 'OCSP response: no response sent', '---', 'Certificate chain']
    for i, pem in enumerate(certificates):
        lines.append(f' {i} s:CN = cert{i}')
        lines.extend(pem.strip().splitlines())
    lines.append('---')
    if cipher is None:
        lines.append('New, (NONE), Cipher is (NONE)')
    else:
        lines.append('Server Temp Key: X25519, 253 bits')
        lines.append(f'Server public key is {public_key_bits} bit')
        lines.append(f'New, {protocol}, Cipher is {cipher}')
    if protocol is not None:
        lines.extend([
            'SSL-Session:',
            f'    Protocol  : {protocol}',
            f'    Cipher    : {cipher or "0000"}',
            '    TLS session ticket lifetime hint: 300 (seconds)',
            f'    Verify return code: {verify_code} ({"ok" if verify_code == 0 else "unable to get local issuer certificate"})',
        ])
    lines.append('---')
    return '\n'.join(lines) + '\n'

# Protocol label a fake server reports for each selector. DEFAULT negotiates the highest one.
PROTOCOL_LABELS = {
    ProtocolVersion.SSLv2: 'SSLv2',
    ProtocolVersion.SSLv3: 'SSLv3',
    ProtocolVersion.TLS1_0: 'TLSv1',
    ProtocolVersion.TLS1_1: 'TLSv1.1',
    ProtocolVersion.TLS1_2: 'TLSv1.2',
}

def offered_ciphers(expression: str, universe: Sequence[str]) -> List[str]:
    """ Tiny interpreter for the cipher expressions the scanner builds. """
    excluded = set()
    offered: List[str] = []
    for token in expression.split(':'):
        if token.startswith('!'):
            excluded.add(token[1:])
        elif token.startswith('+') or token == 'COMPLEMENTOFALL':
            continue
        elif token == 'ALL':
            offered.extend(universe)
        else:
            offered.append(token)
    return [cipher for i, cipher in enumerate(offered) if cipher not in excluded and cipher not in offered[:i]]

class FakeServer(HandshakeExecutor):
    """
    Synthetic handshake executor. With `server_order` it picks its own first supported cipher,
    otherwise the first one offered by the client.
    """
    def __init__(self, ciphers: Sequence[str], server_order: bool = True, protocols: Sequence[str] = ('TLSv1.2',), certificates: Sequence[str] = (), certificates_by_cipher: Optional[dict] = None):
        self.ciphers = list(ciphers)
        self.server_order = server_order
        self.protocols = list(protocols)
        self.certificates = list(certificates)
        self.certificates_by_cipher = certificates_by_cipher or {}
        self.requests = []

    def run(self, connection_settings, request):
        self.requests.append(request)
        if request.protocol == ProtocolVersion.DEFAULT:
            label = self.protocols[0] if self.protocols else None
        else:
            label = PROTOCOL_LABELS[request.protocol]
        if label not in self.protocols:
            return None
        offered = offered_ciphers(request.cipher_expression, self.ciphers)
        candidates = [cipher for cipher in (self.ciphers if self.server_order else offered) if cipher in offered and cipher in self.ciphers]
        if not candidates:
            return make_transcript(None, label)
        cipher = candidates[0]
        return make_transcript(cipher, label, self.certificates_by_cipher.get(cipher, self.certificates))

    @property
    def expressions(self) -> List[str]:
        """ Distinct cipher expressions offered, in order. """
        seen: List[str] = []
        for request in self.requests:
            if request.cipher_expression not in seen:
                seen.append(request.cipher_expression)
        return seen

@pytest.fixture
def fake_server():
    return FakeServer

@pytest.fixture
def transcript():
    return make_transcript
