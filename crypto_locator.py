# Purpose: Locate Fabric identity and TLS materials in a cryptogen-style
# organizations tree and bundle them for Fabric Gateway clients.

import os
from dataclasses import dataclass
from datetime import datetime, timezone

DEFAULT_PORT = 8080
DEFAULT_HOST = "0.0.0.0"
DEFAULT_CRYPTO_BASE_PATH = "../local-network/organizations"
PEER_PORT = 7051
PEER_ORGS_DIR = "peerOrganizations"


class CryptoServiceError(Exception):
    """Base class for every lookup failure reported to a caller."""
    status_code = 500


class InvalidRequest(CryptoServiceError):
    status_code = 400


class NotFound(CryptoServiceError):
    """
    Raised when one of the lookup checkpoints finds nothing.
    `step` names the checkpoint; `path` is the server-side path that was
    missing and must only ever be logged.
    """
    status_code = 404

    def __init__(self, message, step, path=None):
        super().__init__(message)
        self.step = step
        self.path = path


class InternalError(CryptoServiceError):
    """
    Unexpected I/O or decoding failure. The message is safe to return to a
    caller; `detail` keeps the original error text, paths included, for the log.
    """
    status_code = 500

    def __init__(self, message, step=None, detail=None):
        super().__init__(message)
        self.step = step
        self.detail = detail


def internal_error(e, step):
    """Wraps an OSError or UnicodeDecodeError without the filename it carries."""
    if isinstance(e, UnicodeDecodeError):
        reason = f"not valid UTF-8 ({e.reason})"
    else:
        reason = e.strerror or type(e).__name__
    return InternalError(f"Could not read {step.replace('_', ' ')}: {reason}", step, str(e))


class SetupError(Exception):
    """Raised at startup when the organizations tree is not usable."""
    pass


@dataclass(frozen=True)
class ServiceConfig:
    crypto_base_path: str = DEFAULT_CRYPTO_BASE_PATH
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST


@dataclass(frozen=True)
class ResolvedPaths:
    user_dir: str
    cert_dir: str
    key_dir: str
    tls_cert_path: str


def utc_timestamp():
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2026-01-05T10:00:00.000Z"""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def msp_id_from_org_name(org_name: str) -> str:
    """
    Derives the MSP ID from an organization domain.
    "org1.example.com" -> "Org1MSP"
    """
    base_name = org_name.split(".")[0]
    return base_name[:1].upper() + base_name[1:] + "MSP"


def peer_endpoint(org_name: str, peer_name: str) -> str:
    return f"{peer_name}.{org_name}:{PEER_PORT}"


def resolve_paths(base_path, org_name, user_name, peer_name) -> ResolvedPaths:
    """Builds the four lookup paths. No filesystem access."""
    org_dir = os.path.join(base_path, PEER_ORGS_DIR, org_name)
    user_dir = os.path.join(org_dir, "users", f"{user_name}@{org_name}")
    return ResolvedPaths(
        user_dir=user_dir,
        cert_dir=os.path.join(user_dir, "msp", "signcerts"),
        key_dir=os.path.join(user_dir, "msp", "keystore"),
        tls_cert_path=os.path.join(org_dir, "peers", f"{peer_name}.{org_name}", "tls", "ca.crt"),
    )


def _check_name(value, label):
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"{label} is required")
    # Names become single path segments; anything that could climb or split the path is rejected.
    if value in (".", "..") or "/" in value or "\\" in value or "\0" in value:
        raise InvalidRequest(f"{label} is not a valid name")


def validate_request(org_name, user_name, peer_name):
    """Rejects empty or unsafe parameters before any filesystem access."""
    _check_name(org_name, "Organization name")
    _check_name(user_name, "User name")
    _check_name(peer_name, "Peer name")


def select_file(directory):
    """
    Returns the lexicographically smallest regular file in `directory`,
    or None when it holds no files. Subdirectories are skipped.
    """
    names = sorted(
        name for name in os.listdir(directory)
        if os.path.isfile(os.path.join(directory, name))
    )
    if not names:
        return None
    return os.path.join(directory, names[0])


def read_text(path):
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _list_dir_names(directory, suffix=""):
    if not os.path.isdir(directory):
        return []
    names = []
    for name in sorted(os.listdir(directory)):
        if not os.path.isdir(os.path.join(directory, name)):
            continue
        if suffix:
            if not name.endswith(suffix):
                continue
            name = name[:-len(suffix)]
        names.append(name)
    return names


def validate_setup(config: ServiceConfig):
    """Startup check: the base path and its peerOrganizations directory must exist."""
    print("CRYPTO_SERVICE: [*] Validating crypto service setup...")
    print(f"CRYPTO_SERVICE: [*] Crypto base path: {config.crypto_base_path}")

    if not os.path.isdir(config.crypto_base_path):
        raise SetupError(
            f"Crypto base path not found: {config.crypto_base_path}. "
            "Make sure the Hyperledger network has been started and crypto materials generated."
        )

    peer_orgs_path = os.path.join(config.crypto_base_path, PEER_ORGS_DIR)
    if not os.path.isdir(peer_orgs_path):
        raise SetupError(
            f"Peer organizations directory not found: {peer_orgs_path}. "
            "Make sure the network has been properly initialized."
        )

    print("CRYPTO_SERVICE: [OK] Crypto service setup validation passed")


class CredentialLocator:
    """
    Resolves a user's signing identity and a peer's TLS CA certificate from
    the organizations tree:

        {base}/peerOrganizations/{org}/users/{user}@{org}/msp/signcerts/*
        {base}/peerOrganizations/{org}/users/{user}@{org}/msp/keystore/*
        {base}/peerOrganizations/{org}/peers/{peer}.{org}/tls/ca.crt

    Each call is read-only and independent of every other call.
    """

    def __init__(self, config: ServiceConfig):
        self.config = config

    @property
    def peer_orgs_dir(self):
        return os.path.join(self.config.crypto_base_path, PEER_ORGS_DIR)

    def resolve(self, org_name, user_name, peer_name):
        validate_request(org_name, user_name, peer_name)
        paths = resolve_paths(self.config.crypto_base_path, org_name, user_name, peer_name)

        step = "user"
        try:
            # 1. User identity
            if not os.path.isdir(paths.user_dir):
                raise NotFound(f"User {user_name}@{org_name} not found", "user", paths.user_dir)

            step = "certificate"
            if not os.path.isdir(paths.cert_dir):
                raise NotFound("User certificate directory not found", "certificate_directory", paths.cert_dir)
            cert_file = select_file(paths.cert_dir)
            if cert_file is None:
                raise NotFound("No user certificate files found", "certificate_files", paths.cert_dir)
            user_certificate = read_text(cert_file)

            step = "private_key"
            if not os.path.isdir(paths.key_dir):
                raise NotFound("User private key directory not found", "key_directory", paths.key_dir)
            key_file = select_file(paths.key_dir)
            if key_file is None:
                raise NotFound("No user private key files found", "key_files", paths.key_dir)
            user_private_key = read_text(key_file)

            # 2. TLS materials for the peer
            step = "tls_certificate"
            if not os.path.isfile(paths.tls_cert_path):
                raise NotFound(
                    f"TLS certificate for {peer_name}.{org_name} not found",
                    "tls_certificate",
                    paths.tls_cert_path,
                )
            tls_ca_cert = read_text(paths.tls_cert_path)
        except (OSError, UnicodeDecodeError) as e:
            raise internal_error(e, step) from e

        return {
            "identity": {
                "certificate": user_certificate,
                "privateKey": user_private_key,
                "mspId": msp_id_from_org_name(org_name),
            },
            "tls": {
                "caCert": tls_ca_cert,
                "peerEndpoint": peer_endpoint(org_name, peer_name),
            },
            "metadata": {
                "userName": user_name,
                "orgName": org_name,
                "peerName": peer_name,
                "generatedAt": utc_timestamp(),
            },
        }

    def list_organizations(self):
        try:
            return _list_dir_names(self.peer_orgs_dir)
        except OSError as e:
            raise internal_error(e, "organizations") from e

    def _org_dir(self, org_name):
        _check_name(org_name, "Organization name")
        org_dir = os.path.join(self.peer_orgs_dir, org_name)
        if not os.path.isdir(org_dir):
            raise NotFound(f"Organization {org_name} not found", "organization", org_dir)
        return org_dir

    def list_users(self, org_name):
        """User names registered under an organization, without the @org suffix."""
        org_dir = self._org_dir(org_name)
        try:
            return _list_dir_names(os.path.join(org_dir, "users"), f"@{org_name}")
        except OSError as e:
            raise internal_error(e, "users") from e

    def list_peers(self, org_name):
        """Peer names of an organization, without the .org suffix."""
        org_dir = self._org_dir(org_name)
        try:
            return _list_dir_names(os.path.join(org_dir, "peers"), f".{org_name}")
        except OSError as e:
            raise internal_error(e, "peers") from e
