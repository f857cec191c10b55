# Purpose: HTTP facade over the Fabric organizations tree. Serves user identity
# and peer TLS materials to Fabric Gateway clients.

import os
import sys
import signal
import argparse
from functools import lru_cache

import yaml
import referencing
from flask import Flask, jsonify
from flask_cors import CORS
from jsonschema import Draft7Validator
from referencing.jsonschema import DRAFT7
from werkzeug.exceptions import HTTPException
from werkzeug.routing import BaseConverter

from crypto_locator import (
    CredentialLocator,
    CryptoServiceError,
    DEFAULT_CRYPTO_BASE_PATH,
    DEFAULT_HOST,
    DEFAULT_PORT,
    InternalError,
    NotFound,
    ServiceConfig,
    SetupError,
    msp_id_from_org_name,
    utc_timestamp,
    validate_setup,
)

SERVICE_NAME = "openledger-crypto-service"
SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "openapi", "crypto_service.yaml")
SCHEMA_URI = "http://openledger/crypto_service.yaml"


class SegmentConverter(BaseConverter):
    """Single path segment that may be empty, so missing parameters reach the handler."""
    regex = "[^/]*"
    part_isolating = True


@lru_cache(maxsize=1)
def load_schema_registry():
    with open(SCHEMA_PATH, 'r') as f:
        document = yaml.safe_load(f)
    resource = referencing.Resource.from_contents(document, default_specification=DRAFT7)
    return referencing.Registry().with_resource(uri=SCHEMA_URI, resource=resource)


def validate_against_schema(data, schema_name):
    """Checks a response body against a component schema of openapi/crypto_service.yaml. Logs only."""
    if not os.path.exists(SCHEMA_PATH):
        print(f"CRYPTO_SERVICE: [!] Schema file not found, skipping {schema_name} check: {SCHEMA_PATH}")
        return False
    target_schema = {"$ref": f"{SCHEMA_URI}#/components/schemas/{schema_name}"}
    try:
        Draft7Validator(target_schema, registry=load_schema_registry()).validate(data)
    except Exception as e:
        print(f"CRYPTO_SERVICE: [!] Schema Validation Error ({schema_name}): {e}")
        return False
    return True


def create_app(config: ServiceConfig):
    app = Flask(__name__)
    app.url_map.merge_slashes = False
    app.url_map.converters['segment'] = SegmentConverter
    CORS(app)

    locator = CredentialLocator(config)
    app.extensions['credential_locator'] = locator

    @app.errorhandler(CryptoServiceError)
    def handle_lookup_error(e):
        if isinstance(e, NotFound):
            print(f"CRYPTO_SERVICE: [!] Lookup failed at '{e.step}': {e.path}")
            return jsonify({"error": str(e)}), 404
        if isinstance(e, InternalError):
            print(f"CRYPTO_SERVICE: [!] Internal error at '{e.step}': {e.detail or e}")
            return jsonify({"error": "Internal server error", "message": str(e)}), 500
        print(f"CRYPTO_SERVICE: [!] Rejected request: {e}")
        return jsonify({"error": str(e)}), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        message = "Not found" if e.code == 404 else e.name
        return jsonify({"error": message}), e.code

    @app.route('/health', methods=['GET'])
    def health():
        body = {
            "status": "OK",
            "service": SERVICE_NAME,
            "timestamp": utc_timestamp(),
            "cryptoPath": config.crypto_base_path,
        }
        validate_against_schema(body, "HealthResponse")
        return jsonify(body)

    @app.route('/api/crypto/gateway/<segment:org_name>/<segment:user_name>/<segment:peer_name>', methods=['GET'])
    def gateway_materials(org_name, user_name, peer_name):
        """
        Returns everything a Fabric Gateway client needs: the user's signing
        identity (certificate, private key, MSP ID) and the TLS CA certificate
        and endpoint of the peer it connects to.
        """
        print(f"CRYPTO_SERVICE: [*] Requesting gateway crypto materials for {user_name}@{org_name} via {peer_name}.{org_name}")
        try:
            bundle = locator.resolve(org_name, user_name, peer_name)
        except CryptoServiceError:
            raise
        except Exception as e:
            print(f"CRYPTO_SERVICE: [!] Error retrieving gateway crypto materials: {e!r}")
            return jsonify({"error": "Internal server error", "message": str(e)}), 500

        print(f"CRYPTO_SERVICE: [OK] Retrieved gateway crypto materials for {user_name}@{org_name}")
        validate_against_schema(bundle, "CredentialBundle")
        return jsonify(bundle)

    @app.route('/api/crypto/organizations', methods=['GET'])
    def organizations():
        body = {"organizations": locator.list_organizations()}
        validate_against_schema(body, "OrganizationList")
        return jsonify(body)

    @app.route('/api/crypto/organizations/<org_name>/users', methods=['GET'])
    def organization_users(org_name):
        body = {
            "orgName": org_name,
            "mspId": msp_id_from_org_name(org_name),
            "users": locator.list_users(org_name),
        }
        validate_against_schema(body, "UserList")
        return jsonify(body)

    @app.route('/api/crypto/organizations/<org_name>/peers', methods=['GET'])
    def organization_peers(org_name):
        body = {
            "orgName": org_name,
            "mspId": msp_id_from_org_name(org_name),
            "peers": locator.list_peers(org_name),
        }
        validate_against_schema(body, "PeerList")
        return jsonify(body)

    return app


def load_config(argv=None, environ=None):
    """Command-line flags win over environment variables, which win over defaults."""
    environ = os.environ if environ is None else environ
    parser = argparse.ArgumentParser(description="OpenLedger Crypto Service")
    parser.add_argument("--port", type=int, default=environ.get("PORT", str(DEFAULT_PORT)), help="Listen port (env PORT).")
    parser.add_argument("--host", default=environ.get("HOST", DEFAULT_HOST), help="Listen address (env HOST).")
    parser.add_argument("--cryptoPath", default=environ.get("CRYPTO_BASE_PATH", DEFAULT_CRYPTO_BASE_PATH),
                        help="Root of the organizations tree (env CRYPTO_BASE_PATH).")
    args = parser.parse_args(argv)
    return ServiceConfig(crypto_base_path=args.cryptoPath, port=args.port, host=args.host)


def handle_shutdown(signum, frame):
    print(f"CRYPTO_SERVICE: [*] Received {signal.Signals(signum).name} signal, shutting down...")
    sys.exit(0)


def main(argv=None):
    config = load_config(argv)

    try:
        validate_setup(config)
    except SetupError as e:
        print(f"CRYPTO_SERVICE: [!] {e}")
        sys.exit(1)

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    app = create_app(config)
    print("CRYPTO_SERVICE: [*] OpenLedger Crypto Service starting")
    print(f"CRYPTO_SERVICE: [*] Server running on port {config.port}")
    print(f"CRYPTO_SERVICE: [*] Health check: http://localhost:{config.port}/health")
    print("CRYPTO_SERVICE: [*] Gateway crypto endpoint: GET /api/crypto/gateway/<orgName>/<userName>/<peerName>")
    print(f"CRYPTO_SERVICE: [*] Example: curl http://localhost:{config.port}/api/crypto/gateway/org1.example.com/User1/peer0")
    app.run(host=config.host, port=config.port, debug=False, use_reloader=False, threaded=True)


if __name__ == "__main__":
    main()
