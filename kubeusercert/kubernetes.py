import base64
import binascii
import copy
import json
import re
import secrets
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

import requests
from loguru import logger
from pykube import HTTPClient
from pykube.exceptions import HTTPError, KubernetesError
from pykube.objects import APIObject

from kubeusercert.certificates import CertificateRequest
from kubeusercert.errors import APIError, ConflictError, DecodeError, IssuanceTimeout

SIGNER_NAME = "kubernetes.io/kube-apiserver-client"
GROUPS = ["system:authenticated"]
USAGES = ["client auth"]

APPROVAL_REASON = "User activation"
APPROVAL_MESSAGE = "This CSR was approved"

# DNS-1123 subdomain, leaves room for the random suffix
_MAX_NAME_PREFIX = 253 - 9


def csr_name(user: str) -> str:
    """
    Unique CertificateSigningRequest name for one run: the sanitized username plus a random suffix
    """
    labels = [re.sub(r"[^a-z0-9-]+", "-", label).strip("-") for label in user.lower().split(".")]
    prefix = ".".join(label for label in labels if label)[:_MAX_NAME_PREFIX].strip("-.")
    return f"{prefix or 'user'}-{secrets.token_hex(4)}"


class CertificateSigningRequest(APIObject):
    version = "certificates.k8s.io/v1"
    endpoint = "certificatesigningrequests"
    kind = "CertificateSigningRequest"

    @property
    def conditions(self) -> List[dict]:
        return (self.obj.get("status") or {}).get("conditions") or []

    def has_condition(self, condition_type: str) -> bool:
        return any(c.get("type") == condition_type for c in self.conditions)

    @property
    def certificate(self) -> Optional[bytes]:
        """
        PEM bytes of the issued certificate, None as long as the signer has not populated it
        """
        data = (self.obj.get("status") or {}).get("certificate")
        if not data:
            return None
        try:
            return base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"certificate on {self.name} is not valid base64: {e}") from e

    def approve(self) -> bool:
        """
        Approve the CSR using the API.
        A certificate is approved by adding a status condition of type Approved

        The update can only be applied to the approval operation endpoint.
        Returns False without calling the API when the CSR already carries an Approved condition.
        """
        if self.has_condition("Approved"):
            return False

        obj = copy.deepcopy(self.obj)
        status = obj.get("status") or {}
        status["conditions"] = self.conditions + [
            {
                "type": "Approved",
                "status": "True",
                "reason": APPROVAL_REASON,
                "message": APPROVAL_MESSAGE,
                "lastUpdateTime": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            }
        ]
        obj["status"] = status
        r = self.api.put(
            **self.api_kwargs(
                operation="approval",
                data=json.dumps(obj),
            )
        )
        self.api.raise_for_status(r)
        self.set_obj(r.json())
        return True

    @staticmethod
    def new(
        api: HTTPClient,
        name: str,
        request: CertificateRequest,
        groups: List[str] = None,
        signer: str = SIGNER_NAME,
        usages: List[str] = None,
        expiration_seconds: Optional[int] = None,
    ):
        """
        Create a kubernetes CertificateSigningRequest using the standard client signer on the apiserver
        The CSR has to be a valid X509 CSR with CN being the username and O being the group in kubernetes

        :param expiration_seconds is left out when empty, the signer default applies then
        """
        csr_b64 = base64.b64encode(request.pem).decode("utf-8")
        spec = {
            "groups": list(groups if groups is not None else GROUPS),
            "request": csr_b64,
            "signerName": signer,
            "usages": list(usages if usages is not None else USAGES),
        }
        if expiration_seconds:
            spec["expirationSeconds"] = int(expiration_seconds)
        obj = {
            "apiVersion": "certificates.k8s.io/v1",
            "kind": "CertificateSigningRequest",
            "metadata": {"name": name},
            "spec": spec,
        }
        return CertificateSigningRequest(api, obj)


def _status_code(e: Exception) -> Optional[int]:
    if isinstance(e, HTTPError):
        return e.code
    response = getattr(e, "response", None)
    return getattr(response, "status_code", None)


class IssuanceClient:
    """
    Drives a CertificateSigningRequest through create, approve, wait for the signer and delete.

    ``clock`` and ``sleep`` only exist so the poll loop can be run without real time passing.
    """

    def __init__(self, api: HTTPClient, clock=time.monotonic, sleep=time.sleep):
        self.api = api
        self.clock = clock
        self.sleep = sleep

    def submit(
        self,
        request: CertificateRequest,
        name: str,
        groups: List[str] = None,
        signer: str = SIGNER_NAME,
        usages: List[str] = None,
        expiration_seconds: Optional[int] = None,
    ) -> CertificateSigningRequest:
        csr = CertificateSigningRequest.new(
            self.api,
            name,
            request,
            groups=groups,
            signer=signer,
            usages=usages,
            expiration_seconds=expiration_seconds,
        )
        try:
            csr.create()
        except (KubernetesError, requests.RequestException) as e:
            if _status_code(e) == 409:
                raise ConflictError(f"CertificateSigningRequest {name} already exists") from e
            raise APIError(f"unable to create CertificateSigningRequest {name}: {e}", stage="submit") from e
        logger.info("Created CertificateSigningRequest {}", name)
        return csr

    def approve(self, csr: CertificateSigningRequest) -> CertificateSigningRequest:
        try:
            approved = csr.approve()
        except (KubernetesError, requests.RequestException) as e:
            raise APIError(f"unable to approve CertificateSigningRequest {csr.name}: {e}", stage="approve") from e
        if approved:
            logger.info("Approved CertificateSigningRequest {}", csr.name)
        else:
            logger.debug("CertificateSigningRequest {} was already approved", csr.name)
        return csr

    def await_issuance(
        self,
        csr: CertificateSigningRequest,
        poll_interval: float = 1.0,
        timeout: float = 60.0,
        cancel=None,
    ) -> CertificateSigningRequest:
        """
        Reload the CSR until the signer populated status.certificate.

        Raises IssuanceTimeout once ``timeout`` seconds passed or ``cancel`` (a threading.Event) is set,
        APIError when the CSR got denied or failed.
        """
        deadline = self.clock() + timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                csr.reload()
            except (KubernetesError, requests.RequestException) as e:
                raise APIError(f"unable to fetch CertificateSigningRequest {csr.name}: {e}", stage="poll") from e

            if csr.certificate:
                logger.debug("Certificate for {} issued after {} attempt(s)", csr.name, attempt)
                return csr
            for condition_type in ("Denied", "Failed"):
                if csr.has_condition(condition_type):
                    raise APIError(
                        f"CertificateSigningRequest {csr.name} was {condition_type.lower()}",
                        stage="issuance",
                    )

            remaining = deadline - self.clock()
            if remaining <= 0:
                raise IssuanceTimeout(
                    f"no certificate issued for {csr.name} within {timeout}s ({attempt} attempts)"
                )
            delay = min(poll_interval, remaining)
            logger.debug("Waiting {:.1f}s for the signer of {}", delay, csr.name)
            if cancel is not None:
                if cancel.wait(delay):
                    raise IssuanceTimeout(f"waiting for the certificate of {csr.name} was cancelled")
            else:
                self.sleep(delay)

    def delete(self, name: str) -> bool:
        """
        Best effort removal, failures are logged and reported through the return value only
        """
        csr = CertificateSigningRequest(self.api, {"metadata": {"name": name}})
        try:
            csr.delete()
        except (KubernetesError, requests.RequestException) as e:
            logger.warning("Unable to delete CertificateSigningRequest {}: {}", name, e)
            return False
        logger.info("Deleted CertificateSigningRequest {}", name)
        return True

    @contextmanager
    def signing_request(
        self,
        request: CertificateRequest,
        name: str,
        expiration_seconds: Optional[int] = None,
    ) -> Iterator[CertificateSigningRequest]:
        """
        Submit the CSR and make sure it is deleted again however the block is left
        """
        csr = self.submit(request, name, expiration_seconds=expiration_seconds)
        try:
            yield csr
        finally:
            self.delete(name)
