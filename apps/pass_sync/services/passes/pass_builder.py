"""
Pass Builder (.pkpass)
======================

Purpose:
- Render the latest PassStateRecord into a signed Wallet pass.

Layout of the archive:
- pass.json      storeCard; template pass.json (if any) is the base
- template files everything under <template_dir>/<passTypeId>/ (icons, logos)
- manifest.json  SHA-1 of every file above
- signature      detached DER PKCS#7 over manifest.json (signer cert + WWDR)
"""

from __future__ import annotations

import hashlib
import io
import json
import os
import zipfile
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs7

from apps.pass_sync.config.settings import Settings
from apps.pass_sync.services.errors import ConfigurationError
from apps.pass_sync.services.passes.pass_state_repository import PassStateRecord
from apps.pass_sync.utils.pass_auth import pass_auth_token

RESERVED_FILES = {"pass.json", "manifest.json", "signature"}


def _load_cert(data: bytes) -> x509.Certificate:
    if b"-----BEGIN" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


@dataclass(frozen=True)
class PassSigner:
    certificate: x509.Certificate
    private_key: Any
    wwdr: Optional[x509.Certificate] = None

    @classmethod
    def from_files(
        cls,
        cert_path: str,
        key_path: str,
        *,
        passphrase: Optional[str] = None,
        wwdr_path: Optional[str] = None,
    ) -> "PassSigner":
        with open(cert_path, "rb") as f:
            cert = _load_cert(f.read())
        with open(key_path, "rb") as f:
            key = serialization.load_pem_private_key(
                f.read(), password=passphrase.encode() if passphrase else None
            )
        wwdr = None
        if wwdr_path:
            with open(wwdr_path, "rb") as f:
                wwdr = _load_cert(f.read())
        return cls(certificate=cert, private_key=key, wwdr=wwdr)

    def sign(self, manifest: bytes) -> bytes:
        builder = (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(manifest)
            .add_signer(self.certificate, self.private_key, hashes.SHA256())
        )
        if self.wwdr is not None:
            builder = builder.add_certificate(self.wwdr)
        return builder.sign(
            serialization.Encoding.DER,
            [pkcs7.PKCS7Options.DetachedSignature, pkcs7.PKCS7Options.Binary],
        )


class PassBuilder:
    def __init__(
        self,
        signer: PassSigner,
        *,
        team_identifier: str,
        organization_name: str = "WaveX",
        template_dir: str = "certificates",
        web_service_url: Optional[str] = None,
        auth_secret: Optional[str] = None,
    ) -> None:
        self.signer = signer
        self.team_identifier = team_identifier
        self.organization_name = organization_name
        self.template_dir = template_dir
        self.web_service_url = web_service_url
        self.auth_secret = auth_secret

    @classmethod
    def from_settings(cls, settings: Settings) -> "PassBuilder":
        if not settings.pass_signer_cert_path or not settings.pass_signer_key_path:
            raise ConfigurationError("Missing PASS_SIGNER_CERT_PATH or PASS_SIGNER_KEY_PATH")
        if not settings.apple_team_identifier:
            raise ConfigurationError("Missing APPLE_TEAM_IDENTIFIER")
        signer = PassSigner.from_files(
            settings.pass_signer_cert_path,
            settings.pass_signer_key_path,
            passphrase=settings.pass_signer_key_passphrase,
            wwdr_path=settings.wwdr_certificate_path,
        )
        return cls(
            signer,
            team_identifier=settings.apple_team_identifier,
            organization_name=settings.pass_organization_name,
            template_dir=settings.pass_template_dir,
            web_service_url=settings.pass_webservice_url,
            auth_secret=settings.pass_auth_secret,
        )

    # -----------------------------
    # pass.json
    # -----------------------------
    def pass_json(self, pass_type_id: str, record: PassStateRecord, base: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        doc: Dict[str, Any] = dict(base or {})
        doc.update({
            "formatVersion": 1,
            "passTypeIdentifier": pass_type_id,
            "serialNumber": record.serial_number,
            "teamIdentifier": self.team_identifier,
            "organizationName": self.organization_name,
        })
        doc.setdefault("description", f"{self.organization_name} membership card")

        if self.web_service_url and self.auth_secret:
            doc["webServiceURL"] = self.web_service_url
            doc["authenticationToken"] = pass_auth_token(self.auth_secret, record.serial_number)

        card = dict(doc.get("storeCard") or {})
        card["primaryFields"] = [{
            "key": "balance",
            "label": "BALANCE",
            "value": record.balance or "0",
            "changeMessage": "Balance updated: %@",
        }]

        secondary: List[Dict[str, Any]] = []
        if record.last_transaction:
            tx = record.last_transaction
            secondary.append({
                "key": "lastTransaction",
                "label": "LAST TRANSACTION",
                "value": f"{tx.get('kind', '')} {tx.get('amount', '')}".strip(),
                "changeMessage": "%@",
            })
        card["secondaryFields"] = secondary

        auxiliary: List[Dict[str, Any]] = []
        if record.upcoming_event:
            ev = record.upcoming_event
            auxiliary.append({
                "key": "nextEvent",
                "label": "NEXT EVENT",
                "value": ev.get("name") or "",
                "changeMessage": "Next event: %@",
            })
            if ev.get("date"):
                auxiliary.append({
                    "key": "nextEventDate",
                    "label": "DATE",
                    "value": ev["date"],
                    "dateStyle": "PKDateStyleFull",
                })
        card["auxiliaryFields"] = auxiliary

        doc["storeCard"] = card
        return doc

    # -----------------------------
    # Archive
    # -----------------------------
    def _template_files(self, pass_type_id: str) -> Dict[str, bytes]:
        root = os.path.join(self.template_dir, pass_type_id)
        files: Dict[str, bytes] = {}
        if not os.path.isdir(root):
            return files
        for dirpath, _, filenames in os.walk(root):
            for name in sorted(filenames):
                full = os.path.join(dirpath, name)
                rel = os.path.relpath(full, root).replace(os.sep, "/")
                with open(full, "rb") as f:
                    files[rel] = f.read()
        return files

    def build(self, pass_type_id: str, record: PassStateRecord) -> bytes:
        files = self._template_files(pass_type_id)

        base = None
        if "pass.json" in files:
            base = json.loads(files["pass.json"].decode("utf-8"))
        files = {k: v for k, v in files.items() if k not in RESERVED_FILES}
        files["pass.json"] = json.dumps(
            self.pass_json(pass_type_id, record, base), indent=2
        ).encode("utf-8")

        manifest = {name: hashlib.sha1(data).hexdigest() for name, data in sorted(files.items())}
        manifest_bytes = json.dumps(manifest, indent=2).encode("utf-8")

        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for name, data in sorted(files.items()):
                zf.writestr(name, data)
            zf.writestr("manifest.json", manifest_bytes)
            zf.writestr("signature", self.signer.sign(manifest_bytes))
        return buf.getvalue()
