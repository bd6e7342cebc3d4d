from dataclasses import dataclass
from datetime import datetime
from typing import Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.x509.oid import NameOID

from kubeusercert.errors import CryptoError, DecodeError, EncodingError

NO_ORGANIZATION = "none"


class KeyPair:
    """
    RSA key pair owned by a single run. Only ever leaves the process embedded in the kubeconfig.
    """

    algorithm = "RSA"

    def __init__(self, private_key: RSAPrivateKey):
        self.private_key = private_key

    @property
    def key_size(self) -> int:
        return self.private_key.key_size

    @property
    def public_key(self):
        return self.private_key.public_key()

    def private_pem(self) -> bytes:
        """
        PKCS#1 PEM ("RSA PRIVATE KEY") as expected in client-key-data
        """
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )


@dataclass(frozen=True)
class CertificateRequest:
    common_name: str
    organization: str
    der: bytes
    signature_algorithm: str

    @property
    def pem(self) -> bytes:
        return x509.load_der_x509_csr(self.der).public_bytes(serialization.Encoding.PEM)


@dataclass(frozen=True)
class IssuedCertificate:
    common_name: str
    organization: str
    issuer_common_name: str
    not_after: datetime
    raw: bytes

    def summary(self) -> str:
        return (
            f"Certificate successfully issued to username {self.common_name} "
            f"in group {self.organization}, signed by {self.issuer_common_name}, "
            f"valid until {self.not_after}"
        )


def generate_key(bits: int = 2048) -> KeyPair:
    """
    Create a simple RSA private key
    """
    try:
        key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise CryptoError(f"unable to generate a {bits} bit RSA key: {e}") from e
    return KeyPair(key)


def build_request(common_name: str, organization: str, key_pair: KeyPair) -> CertificateRequest:
    """
    Generate a Kubernetes CertificateSigningRequest-specific request using the provided key

    CN is the kubernetes username, O (only set when non-empty) the group used for rbac mappings
    """
    if not common_name:
        raise EncodingError("a common name is required for the certificate request")

    try:
        subject = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
        if organization:
            subject.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
        builder = x509.CertificateSigningRequestBuilder().subject_name(x509.Name(subject))
        request = builder.sign(key_pair.private_key, hashes.SHA256())
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise EncodingError(f"unable to build certificate request for {common_name}: {e}") from e

    return CertificateRequest(
        common_name=common_name,
        organization=organization or "",
        der=request.public_bytes(serialization.Encoding.DER),
        signature_algorithm=f"{request.signature_hash_algorithm.name}With{key_pair.algorithm}Encryption",
    )


def _first_attribute(name: x509.Name, oid) -> str:
    attributes = name.get_attributes_for_oid(oid)
    if not attributes:
        return ""
    value = attributes[0].value
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return value


def read_certificate(pem_bytes: Union[bytes, str]) -> IssuedCertificate:
    """
    Decode the certificate the signer placed on the CertificateSigningRequest
    """
    if isinstance(pem_bytes, str):
        pem_bytes = pem_bytes.encode("ascii", errors="replace")
    if not pem_bytes:
        raise DecodeError("no certificate data to decode")

    try:
        cert = x509.load_pem_x509_certificate(pem_bytes)
    except ValueError as e:
        raise DecodeError(f"issued certificate is not a valid PEM certificate: {e}") from e

    return IssuedCertificate(
        common_name=_first_attribute(cert.subject, NameOID.COMMON_NAME),
        organization=_first_attribute(cert.subject, NameOID.ORGANIZATION_NAME) or NO_ORGANIZATION,
        issuer_common_name=_first_attribute(cert.issuer, NameOID.COMMON_NAME),
        not_after=cert.not_valid_after_utc,
        raw=pem_bytes,
    )
