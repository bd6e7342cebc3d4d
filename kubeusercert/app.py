import os

import yaml
from loguru import logger
from pykube import HTTPClient, KubeConfig
from pykube.exceptions import KubernetesError

from kubeusercert.certificates import (
    IssuedCertificate,
    KeyPair,
    build_request,
    generate_key,
    read_certificate,
)
from kubeusercert.errors import InputError
from kubeusercert.kubeconfig import (
    ClusterConnectionInfo,
    assemble,
    load_cluster_info,
    write_kubeconfig,
)
from kubeusercert.kubernetes import IssuanceClient, csr_name


class ClientCertificate:
    """
    One issuance run: key, request, CertificateSigningRequest round trip and the resulting kubeconfig.

    ``api`` and ``cluster_info`` are loaded from ``args.kubeconfig`` unless given.
    """

    def __init__(
        self,
        args,
        api: HTTPClient = None,
        cluster_info: ClusterConnectionInfo = None,
        issuance: IssuanceClient = None,
    ):
        self.user = args.username
        self.group = args.group or ""
        self.expiration_seconds = args.expiration_seconds or None
        self.path = args.output_file or f"{self.user}.config"
        self.key_size = args.key_size
        self.poll_interval = args.poll_interval
        self.timeout = args.timeout

        if api is None or cluster_info is None:
            config = self._load_kubeconfig(args.kubeconfig, args.context)
            if api is None:
                api = HTTPClient(config)
            if cluster_info is None:
                cluster_info = load_cluster_info(
                    config.doc,
                    context=args.context,
                    base_dir=os.path.dirname(os.path.abspath(args.kubeconfig)),
                )
        self.api = api
        self.cluster_info = cluster_info
        self.issuance = issuance or IssuanceClient(self.api)

    @staticmethod
    def _load_kubeconfig(path: str, context: str = None) -> KubeConfig:
        try:
            config = KubeConfig.from_file(path)
            if context:
                config.set_current_context(context)
        except (KubernetesError, OSError, yaml.YAMLError) as e:
            raise InputError(f"unable to load kubeconfig {path}: {e}") from e
        return config

    def run(self) -> IssuedCertificate:
        """
        Create, approve and wait for the CertificateSigningRequest, then write the kubeconfig.

        The CertificateSigningRequest is deleted again on every way out of this method.
        """
        key = generate_key(self.key_size)
        request = build_request(self.user, self.group, key)
        logger.debug("Built {} certificate request for {}", request.signature_algorithm, self.user)

        name = csr_name(self.user)
        with self.issuance.signing_request(request, name, self.expiration_seconds) as csr:
            self.issuance.approve(csr)
            self.issuance.await_issuance(csr, poll_interval=self.poll_interval, timeout=self.timeout)
            issued = read_certificate(csr.certificate)
            print(issued.summary())
            self.write_kubeconfig(issued, key)
        return issued

    def write_kubeconfig(self, issued: IssuedCertificate, key: KeyPair) -> str:
        """
        Write out the kubeconfig file
        """
        profile = assemble(self.cluster_info, self.user, issued, key)
        path = write_kubeconfig(profile, self.path)
        logger.info("Wrote kubeconfig for {} to {}", self.user, path)
        return path
