import base64
import copy
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from kubeusercert.certificates import generate_key
from kubeusercert.kubeconfig import ClusterConnectionInfo, ClusterEntry

CA_PEM = b"-----BEGIN CERTIFICATE-----\nZmFrZSBjYQ==\n-----END CERTIFICATE-----\n"


@pytest.fixture(scope="session")
def ca():
    """Self signed CA standing in for the cluster signer"""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "kubernetes")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture(scope="session")
def key_pair():
    return generate_key(2048)


@pytest.fixture
def signer(ca):
    """Returns a function turning a PEM certificate request into a PEM certificate issued by the CA"""
    ca_key, ca_cert = ca

    def sign(csr_pem: bytes, days: int = 1) -> bytes:
        csr = x509.load_pem_x509_csr(csr_pem)
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(ca_cert.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + timedelta(days=days))
            .sign(ca_key, hashes.SHA256())
        )
        return cert.public_bytes(serialization.Encoding.PEM)

    return sign


class FakeCluster:
    """
    Minimal stand-in for the pykube HTTPClient serving certificatesigningrequests.

    The signer populates status.certificate on the ``issue_after``-th GET of an approved CSR,
    never when ``issue_after`` is None.
    """

    def __init__(self, signer, issue_after=1, certificate=None):
        self.signer = signer
        self.issue_after = issue_after
        self.certificate = certificate
        self.objects = {}
        self.polls = 0
        self.deleted = []

        self.api = MagicMock()
        self.api.post.side_effect = self._create
        self.api.get.side_effect = self._get
        self.api.put.side_effect = self._approve
        self.api.delete.side_effect = self._delete

    @staticmethod
    def _response(obj, status_code=200):
        r = MagicMock()
        r.status_code = status_code
        r.json.return_value = copy.deepcopy(obj)
        return r

    @staticmethod
    def _name(url):
        return url.strip("/").split("/")[1]

    def _create(self, **kwargs):
        obj = json.loads(kwargs["data"])
        obj["status"] = {}
        self.objects[obj["metadata"]["name"]] = obj
        return self._response(obj, 201)

    def _approve(self, **kwargs):
        assert kwargs["url"].endswith("/approval")
        obj = json.loads(kwargs["data"])
        self.objects[self._name(kwargs["url"])] = obj
        return self._response(obj)

    def _get(self, **kwargs):
        self.polls += 1
        obj = self.objects[self._name(kwargs["url"])]
        approved = any(c["type"] == "Approved" for c in obj["status"].get("conditions", []))
        if approved and self.issue_after is not None and self.polls >= self.issue_after:
            pem = self.certificate
            if pem is None:
                pem = self.signer(base64.b64decode(obj["spec"]["request"]))
            obj["status"]["certificate"] = base64.b64encode(pem).decode("utf-8")
        return self._response(obj)

    def _delete(self, **kwargs):
        name = self._name(kwargs["url"])
        self.deleted.append(name)
        self.objects.pop(name, None)
        return self._response({}, 200)


@pytest.fixture
def fake_cluster(signer):
    def make(issue_after=1, certificate=None):
        return FakeCluster(signer, issue_after=issue_after, certificate=certificate)

    return make


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ca_pem():
    return CA_PEM


@pytest.fixture
def cluster_info():
    return ClusterConnectionInfo(
        cluster_name="prod",
        clusters={
            "prod": ClusterEntry(server="https://prod.example.com:6443", certificate_authority=CA_PEM),
            "staging": ClusterEntry(server="https://staging.example.com:6443"),
        },
    )
