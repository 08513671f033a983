from typing import Dict, List, Optional, Sequence
import dataclasses
import hashlib
import os
import threading
import zlib

from OpenSSL import crypto
from cryptography import x509

from .transcript import ScanError, logger

# Upper bound on `<subject hash>.<n>` aliases probed in a trust directory.
MAX_HASH_COLLISIONS: int = 64

class CertificateStoreError(ScanError):
    """ Error for trust directories that can't take another certificate alias. """
    pass

@dataclasses.dataclass
class CertificateRecord:
    """
    One distinct certificate seen during a scan.
    """
    pem: str
    checksum: int
    fingerprint_sha256: str
    is_ca: bool = False
    verified: bool = False
    subject_hash: Optional[str] = None

def content_checksum(pem: str) -> int:
    """
    Fast, non-cryptographic checksum used to find candidate duplicates.
    """
    return zlib.crc32(pem.encode('utf-8'))

def load_certificate(pem: str) -> crypto.X509:
    return crypto.load_certificate(crypto.FILETYPE_PEM, pem.encode('utf-8'))

def signature_algorithm(pem: str) -> Optional[str]:
    """
    Returns the signature algorithm name of a PEM certificate, or None if it can't be decoded.
    """
    try:
        return load_certificate(pem).get_signature_algorithm().decode('utf-8')
    except (crypto.Error, ValueError) as e:
        logger.debug(f'Could not read signature algorithm: {e!r}')
        return None

def _is_ca(certificate: crypto.X509) -> bool:
    try:
        basic_constraints = certificate.to_cryptography().extensions.get_extension_for_class(x509.BasicConstraints)
    except x509.ExtensionNotFound:
        return False
    return basic_constraints.value.ca

class CertificateRegistry:
    """
    Scan-scoped cache of every certificate seen, keyed by content checksum.

    Certificates are verified against `ca_file` and `ca_path`. Verified CA certificates are saved to
    `save_trusted_dir`, which then also acts as a trust directory for later verifications, and everything
    else can be kept in `save_scanned_dir`.
    """
    def __init__(self, ca_file: Optional[str] = None, ca_path: Optional[str] = None, save_trusted_dir: Optional[str] = None, save_scanned_dir: Optional[str] = None):
        self.ca_file = ca_file
        self.ca_path = ca_path
        self.save_trusted_dir = save_trusted_dir
        self.save_scanned_dir = save_scanned_dir
        self._records_by_checksum: Dict[int, List[CertificateRecord]] = {}
        self._records: List[CertificateRecord] = []
        self._lock = threading.Lock()

    @property
    def records(self) -> List[CertificateRecord]:
        """ Every distinct certificate, in registration order. """
        with self._lock:
            return list(self._records)

    def register(self, pem: str, handshake_chain: Sequence[str] = ()) -> CertificateRecord:
        """
        Returns the record for `pem`, creating, verifying and saving it the first time it's seen.
        `handshake_chain` holds the certificates sent in the same handshake, used as untrusted intermediates.
        """
        checksum = content_checksum(pem)
        with self._lock:
            for record in self._records_by_checksum.get(checksum, []):
                # The checksum is weak, so only an exact match counts.
                if record.pem == pem:
                    return record

            record = self._make_record(pem, checksum, [other for other in handshake_chain if other != pem])
            self._records_by_checksum.setdefault(checksum, []).append(record)
            self._records.append(record)
            self._save(record)
            return record

    def register_chain(self, pems: Sequence[str]) -> List[CertificateRecord]:
        """
        Registers all certificates from one handshake, keeping the order they were presented in.
        """
        return [self.register(pem, pems) for pem in pems]

    def _make_record(self, pem: str, checksum: int, untrusted: Sequence[str]) -> CertificateRecord:
        try:
            certificate = load_certificate(pem)
        except crypto.Error as e:
            logger.debug(f'Could not decode certificate with checksum {checksum}: {e!r}')
            return CertificateRecord(pem=pem, checksum=checksum, fingerprint_sha256=hashlib.sha256(pem.encode('utf-8')).hexdigest())

        record = CertificateRecord(
            pem=pem,
            checksum=checksum,
            fingerprint_sha256=certificate.digest('sha256').decode('ascii').replace(':', '').lower(),
            subject_hash=f'{certificate.subject_name_hash():08x}',
        )
        try:
            record.is_ca = _is_ca(certificate)
        except ValueError as e:
            logger.debug(f'Could not read basic constraints of {record.fingerprint_sha256}: {e!r}')
        record.verified = self._verify(certificate, untrusted)
        logger.debug(f'Registered certificate {record.fingerprint_sha256} (CA: {record.is_ca}, verified: {record.verified})')
        return record

    def _make_store(self) -> crypto.X509Store:
        store = crypto.X509Store()
        if self.ca_file or self.ca_path:
            store.load_locations(self.ca_file, self.ca_path)
        if self.save_trusted_dir and os.path.isdir(self.save_trusted_dir):
            store.load_locations(None, self.save_trusted_dir)
        return store

    def _verify(self, certificate: crypto.X509, untrusted: Sequence[str]) -> bool:
        intermediates = []
        for pem in untrusted:
            try:
                intermediates.append(load_certificate(pem))
            except crypto.Error:
                # Undecodable chain members simply can't help the verification.
                continue
        try:
            context = crypto.X509StoreContext(self._make_store(), certificate, chain=intermediates)
            context.verify_certificate()
        except (crypto.X509StoreContextError, crypto.Error) as e:
            logger.debug(f'Certificate did not verify: {e}')
            return False
        return True

    def _save(self, record: CertificateRecord) -> None:
        saved_as_trusted = False
        if self.save_trusted_dir and record.verified and record.is_ca and record.subject_hash is not None:
            self._save_trusted(record)
            saved_as_trusted = True
        if self.save_scanned_dir and not saved_as_trusted:
            os.makedirs(self.save_scanned_dir, exist_ok=True)
            _write_pem(os.path.join(self.save_scanned_dir, f'{record.fingerprint_sha256}.pem'), record.pem)

    def _save_trusted(self, record: CertificateRecord) -> None:
        os.makedirs(self.save_trusted_dir, exist_ok=True)
        filename = f'{record.fingerprint_sha256}.pem'
        _write_pem(os.path.join(self.save_trusted_dir, filename), record.pem)

        # Same `<hash>.<n>` layout as `c_rehash`, so the directory works as an OpenSSL CA path.
        for n in range(MAX_HASH_COLLISIONS):
            alias = os.path.join(self.save_trusted_dir, f'{record.subject_hash}.{n}')
            if os.path.lexists(alias):
                if os.path.islink(alias) and os.readlink(alias) == filename:
                    return
                continue
            os.symlink(filename, alias)
            logger.info(f'Saved trusted CA certificate {record.fingerprint_sha256} as {alias}')
            return
        raise CertificateStoreError(f'More than {MAX_HASH_COLLISIONS} certificates with subject hash {record.subject_hash} in {self.save_trusted_dir}')

def _write_pem(path: str, pem: str) -> None:
    if os.path.exists(path):
        return
    with open(path, 'w') as f:
        f.write(pem)
