"""
Authentication module: Supports certificate-based and delegated device-code auth.
Uses MSAL for token acquisition against Microsoft Identity Platform.
Tokens are needed for two resources: Microsoft Graph (identity lookups) and
Exchange Online (mailbox cmdlets).
"""

from __future__ import annotations

import base64
import getpass
import logging
import os
from typing import Optional

from cryptography.hazmat.primitives.serialization import pkcs12, Encoding, PrivateFormat, NoEncryption
from cryptography.hazmat.primitives.hashes import SHA1
import msal

from ..config import AuthConfig, REQUIRED_PERMISSIONS

logger = logging.getLogger("mailbox_audit.auth")

AUTHORITY_URL = "https://login.microsoftonline.com/{tenant_id}"


class AuthenticationError(Exception):
    """Raised when authentication fails."""
    pass


def load_certificate_credential(cert_path: str, password: str) -> dict:
    """
    Read a base64-encoded PFX and return the MSAL client_credential dict
    (thumbprint + PEM private key).
    """
    try:
        with open(cert_path, "r") as f:
            cert_base64 = f.read().strip()

        cert_bytes = base64.b64decode(cert_base64)
        password_bytes = password.encode("utf-8") if password else None

        private_key, certificate, _ = pkcs12.load_key_and_certificates(
            cert_bytes, password_bytes
        )
        if private_key is None or certificate is None:
            raise AuthenticationError("PFX does not contain both a key and a certificate")

        private_key_pem = private_key.private_bytes(
            Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
        ).decode("utf-8")
        thumbprint = certificate.fingerprint(SHA1()).hex()

    except FileNotFoundError:
        raise AuthenticationError(f"Certificate file not found: {cert_path}")
    except AuthenticationError:
        raise
    except Exception as e:
        raise AuthenticationError(f"Failed to load certificate: {e}")

    logger.info(f"Certificate loaded. Thumbprint: {thumbprint}")
    return {"thumbprint": thumbprint, "private_key": private_key_pem}


class Authenticator:
    """
    Handles MSAL-based authentication.
    Supports:
      - Certificate-based app-only authentication
      - Delegated authentication (device code flow)
    One MSAL application is built per run and reused for every scope.
    """

    def __init__(self, config: AuthConfig):
        self.config = config
        self._app: Optional[msal.ClientApplication] = None
        self._account: Optional[dict] = None
        self._tokens: dict[str, str] = {}

    async def acquire_token(self, scope: str) -> str:
        """Acquire an access token for one resource scope."""
        if scope in self._tokens:
            return self._tokens[scope]
        if self.config.mode == "certificate":
            token = self._acquire_certificate_token(scope)
        elif self.config.mode == "delegated":
            token = self._acquire_delegated_token(scope)
        else:
            raise AuthenticationError(f"Unknown auth mode: {self.config.mode}")
        self._tokens[scope] = token
        return token

    def _acquire_certificate_token(self, scope: str) -> str:
        """Acquire token using certificate-based client credentials."""
        cert_config = self.config.certificate
        if not cert_config:
            raise AuthenticationError("Certificate auth config not provided.")

        if self._app is None:
            logger.info("Authenticating with certificate-based app credentials...")
            password = cert_config.certificate_password
            if not password:
                password = os.environ.get("MAILBOX_AUDIT_CERT_PASSWORD", "")
            if not password:
                password = getpass.getpass("Enter the certificate password: ")

            self._app = msal.ConfidentialClientApplication(
                client_id=cert_config.client_id,
                authority=AUTHORITY_URL.format(tenant_id=cert_config.tenant_id),
                client_credential=load_certificate_credential(
                    cert_config.certificate_path, password
                ),
            )

        result = self._app.acquire_token_for_client(scopes=[scope])
        return self._token_from(result, "Certificate auth", scope)

    def _acquire_delegated_token(self, scope: str) -> str:
        """Device code flow for the first scope, silent refresh for the rest."""
        deleg_config = self.config.delegated
        if not deleg_config:
            raise AuthenticationError("Delegated auth config not provided.")

        if self._app is None:
            self._app = msal.PublicClientApplication(
                client_id=deleg_config.client_id,
                authority=AUTHORITY_URL.format(tenant_id=deleg_config.tenant_id),
            )

        if self._account is not None:
            result = self._app.acquire_token_silent([scope], account=self._account)
            if result:
                return self._token_from(result, "Delegated auth", scope)

        logger.info("Initiating device code authentication flow...")
        flow = self._app.initiate_device_flow(scopes=[scope])
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Device code flow failed: {flow.get('error_description', 'Unknown')}"
            )

        print(f"\n{'='*60}")
        print(f"  To sign in, open: {flow['verification_uri']}")
        print(f"  Enter code: {flow['user_code']}")
        print(f"{'='*60}\n")

        result = self._app.acquire_token_by_device_flow(flow)
        token = self._token_from(result, "Delegated auth", scope)
        accounts = self._app.get_accounts()
        self._account = accounts[0] if accounts else None
        return token

    @staticmethod
    def _token_from(result: dict, label: str, scope: str) -> str:
        if "access_token" in result:
            logger.info(f"{label} successful for {scope}.")
            return result["access_token"]
        error = result.get("error_description", result.get("error", "Unknown"))
        raise AuthenticationError(f"{label} failed for {scope}: {error}")

    @staticmethod
    def list_required_permissions() -> dict[str, str]:
        """Return the map of required API permissions."""
        return REQUIRED_PERMISSIONS
