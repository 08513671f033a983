from typing import List, Optional, Callable, Tuple, Set, Iterable
from dataclasses import dataclass, field
import logging
import re

from .names_and_numbers import NO_CIPHER_MARKER, OCSP_BLOCK_MARKER, PEM_BEGIN, PEM_END

logger = logging.getLogger(__name__)

class ScanError(Exception):
    """ Base error class for errors that occur during scanning. """
    pass

class ConfigurationError(ScanError):
    """ Error for a missing handshake tool or trust anchors. Raised before any probing starts. """
    pass

@dataclass
class HandshakeResult:
    """
    Outcome of one negotiation. `cipher_name` is None when the negotiation failed.
    """
    cipher_name: Optional[str] = None
    protocols: Set[str] = field(default_factory=set)
    public_key_bits: int = 0
    signature_algorithm: Optional[str] = None
    trusted: bool = False
    session_ticket_hint: Optional[int] = None
    ocsp_stapled: bool = False
    # Ephemeral key exchange parameters, e.g. "ECDH,P-256,256bits".
    temp_key: str = ''
    certificate_fingerprints: List[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.cipher_name is not None

_cipher_re = re.compile(r'^(?:New|Reused), .*Cipher is (\S+)')
_temp_key_re = re.compile(r'^(?:Server|Peer) Temp Key:\s*(.+)$')
_protocol_re = re.compile(r'^\s+Protocol\s*:\s*(\S+)')
_ticket_hint_re = re.compile(r'ticket lifetime hint:\s*(\d+)')
_public_key_re = re.compile(r'^Server public key is (\d+) bit')
_verify_re = re.compile(r'Verify (?:return )?code:\s*(\d+)')

def _strip_ocsp_blocks(lines: Iterable[str]) -> Tuple[List[str], bool]:
    """
    Removes the OCSP response sub-blocks, returning the remaining lines and whether a stapled response was seen.
    """
    kept: List[str] = []
    inside_block = False
    ocsp_stapled = False
    for line in lines:
        if line.strip() == OCSP_BLOCK_MARKER:
            inside_block = not inside_block
            continue
        if inside_block:
            if 'OCSP Response Data' in line:
                ocsp_stapled = True
            continue
        kept.append(line)
    return kept, ocsp_stapled

def parse_transcript(transcript: Optional[str], signature_algorithm_of: Optional[Callable[[str], Optional[str]]] = None) -> Tuple[HandshakeResult, List[str]]:
    """
    Parses the output of one `openssl s_client` handshake into a HandshakeResult and the PEM certificates
    presented by the server, in chain order.

    Empty or truncated transcripts are not errors, they produce a result with no cipher.
    """
    result = HandshakeResult()
    if not transcript:
        return result, []

    lines, result.ocsp_stapled = _strip_ocsp_blocks(transcript.splitlines())

    certificates: List[str] = []
    pem_lines: Optional[List[str]] = None
    for line in lines:
        if pem_lines is not None:
            pem_lines.append(line.strip())
            if line.strip() == PEM_END:
                certificates.append('\n'.join(pem_lines) + '\n')
                pem_lines = None
            continue
        if line.strip() == PEM_BEGIN:
            pem_lines = [PEM_BEGIN]
        elif match := _cipher_re.match(line):
            cipher = match.group(1)
            result.cipher_name = None if cipher == NO_CIPHER_MARKER else cipher
        elif match := _temp_key_re.match(line):
            result.temp_key = re.sub(r'\s+', '', match.group(1))
        elif match := _protocol_re.match(line):
            result.protocols = {match.group(1)}
        elif match := _ticket_hint_re.search(line):
            result.session_ticket_hint = int(match.group(1))
        elif match := _public_key_re.match(line):
            result.public_key_bits = int(match.group(1))
        elif match := _verify_re.search(line):
            result.trusted = match.group(1) == '0'

    if pem_lines is not None:
        logger.debug('Transcript ended inside a certificate block, ignoring the partial certificate')

    if certificates:
        if signature_algorithm_of is None:
            from .certificates import signature_algorithm
            signature_algorithm_of = signature_algorithm
        # The first certificate is the server's own.
        result.signature_algorithm = signature_algorithm_of(certificates[0])

    return result, certificates
