import base64
import binascii
import os
import tempfile
from dataclasses import dataclass, field
from typing import Dict, Optional

from loguru import logger
from yaml import dump, Dumper

from kubeusercert.certificates import IssuedCertificate, KeyPair
from kubeusercert.errors import FileIOError, InputError


@dataclass(frozen=True)
class ClusterEntry:
    server: str
    certificate_authority: bytes = b""
    insecure_skip_tls_verify: bool = False


@dataclass(frozen=True)
class ClusterConnectionInfo:
    """
    What we know about the cluster from the kubeconfig used to talk to it.
    ``cluster_name`` is the cluster of the current context, None if the context does not resolve.
    """

    cluster_name: Optional[str]
    clusters: Dict[str, ClusterEntry] = field(default_factory=dict)


def default_kubeconfig() -> str:
    """
    First file of $KUBECONFIG, pykube is missing support for concatenated KUBECONFIG files
    """
    env = os.environ.get("KUBECONFIG", "")
    for path in env.split(os.pathsep):
        if path:
            return path
    return os.path.join(os.path.expanduser("~"), ".kube", "config")


def _certificate_authority(name: str, cluster: dict, base_dir: str) -> bytes:
    if cluster.get("certificate-authority-data"):
        try:
            return base64.b64decode("".join(cluster["certificate-authority-data"].split()), validate=True)
        except (binascii.Error, ValueError) as e:
            raise InputError(f"certificate-authority-data of cluster {name} is not valid base64") from e
    if cluster.get("certificate-authority"):
        path = os.path.join(base_dir, os.path.expanduser(cluster["certificate-authority"]))
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise InputError(f"unable to read certificate-authority {path} of cluster {name}: {e}") from e
    return b""


def _is_true(value) -> bool:
    # hand written kubeconfigs quote the flag, e.g. "true"
    return value is True or (isinstance(value, str) and value.strip().lower() == "true")


def load_cluster_info(doc: dict, context: str = None, base_dir: str = ".") -> ClusterConnectionInfo:
    """
    Resolve the current (or the given) context of a parsed kubeconfig to its cluster
    """
    if not isinstance(doc, dict):
        raise InputError("kubeconfig is not a mapping")

    context_name = context or doc.get("current-context")
    cluster_name = None
    for entry in doc.get("contexts") or []:
        if entry.get("name") == context_name:
            cluster_name = (entry.get("context") or {}).get("cluster")
            break
    else:
        if context:
            raise InputError(f"context {context} not found in kubeconfig")

    clusters = {}
    for entry in doc.get("clusters") or []:
        name = entry.get("name")
        cluster = entry.get("cluster") or {}
        clusters[name] = ClusterEntry(
            server=cluster.get("server", ""),
            certificate_authority=_certificate_authority(name, cluster, base_dir),
            insecure_skip_tls_verify=_is_true(cluster.get("insecure-skip-tls-verify", False)),
        )
    return ClusterConnectionInfo(cluster_name=cluster_name, clusters=clusters)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def assemble(
    cluster_info: ClusterConnectionInfo,
    common_name: str,
    issued: IssuedCertificate,
    key_pair: KeyPair,
) -> dict:
    """
    Build the kubeconfig for the new user. Every binary field is base64 encoded exactly once.
    """
    cluster_name = cluster_info.cluster_name
    cluster = cluster_info.clusters.get(cluster_name) if cluster_name is not None else None
    if cluster is None:
        raise InputError(
            f"current context of the kubeconfig does not resolve to a known cluster ({cluster_name})"
        )

    cluster_entry = {
        "certificate-authority-data": _b64(cluster.certificate_authority),
        "server": cluster.server,
    }
    if cluster.insecure_skip_tls_verify:
        cluster_entry["insecure-skip-tls-verify"] = True

    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"cluster": cluster_entry, "name": cluster_name}],
        "contexts": [
            {
                "context": {"cluster": cluster_name, "user": common_name},
                "name": cluster_name,
            }
        ],
        "current-context": cluster_name,
        "preferences": {},
        "users": [
            {
                "user": {
                    "client-certificate-data": _b64(issued.raw),
                    "client-key-data": _b64(key_pair.private_pem()),
                },
                "name": common_name,
            }
        ],
    }


def write_kubeconfig(profile: dict, path: str) -> str:
    """
    Write out the kubeconfig file. Existing files are replaced atomically, never left half written.
    """
    path = os.path.abspath(path)
    directory = os.path.dirname(path)
    try:
        fd, tmp_path = tempfile.mkstemp(prefix=".kubeconfig-", dir=directory)
    except OSError as e:
        raise FileIOError(f"unable to create a temporary file in {directory}: {e}") from e

    try:
        with os.fdopen(fd, "w") as f:
            f.write(dump(profile, Dumper=Dumper))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        except OSError as cleanup_error:
            logger.warning("Unable to remove temporary file {}: {}", tmp_path, cleanup_error)
        raise FileIOError(f"unable to write kubeconfig {path}: {e}") from e

    logger.debug("Wrote kubeconfig {}", path)
    return path
