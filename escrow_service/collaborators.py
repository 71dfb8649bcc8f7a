"""
Adapters for the services the escrow core depends on but does not own:
the advertisement directory, payment-proof blob storage and deposit address
provisioning.
"""
import hashlib
import logging
import os
import uuid
from typing import Dict, Optional, Protocol

import requests

from common.error_handling import (AdvertisementInactive, NotFoundError, UpstreamUnavailableError,
                                   ValidationError)
from common.settings import settings
from escrow_service.domain import AdvertisementSnapshot, Asset

logger = logging.getLogger(__name__)

class AdvertisementDirectory(Protocol):
    def get_active_advertisement(self, advertisement_id: str,
                                 headers: Optional[Dict[str, str]] = None) -> AdvertisementSnapshot:
        ...

def snapshot_from_payload(payload: dict) -> AdvertisementSnapshot:
    """Freeze the trade-relevant terms of an advertisement payload"""
    if payload.get("status", "ACTIVE") != "ACTIVE":
        raise AdvertisementInactive("Advertisement is not active", field="advertisement_id",
                                    context={"status": payload.get("status")})
    try:
        return AdvertisementSnapshot(
            advertisement_id=str(payload["id"]),
            asset=payload["asset"],
            trade_type=payload["trade_type"],
            rate=payload["rate"],
            min_limit=payload["min_limit"],
            max_limit=payload["max_limit"],
            owner_id=str(payload["user_id"]),
            currency=payload.get("currency"),
            payment_method=payload.get("payment_method"),
        )
    except KeyError as e:
        raise UpstreamUnavailableError(f"Advertisement payload is missing {e.args[0]}") from e

class HttpAdvertisementDirectory:
    """Looks advertisements up in the advertisement service over HTTP"""

    def __init__(self, base_url: str = None, timeout: float = None, session: requests.Session = None):
        self.base_url = (base_url or settings.ads_service_url).rstrip("/")
        self.timeout = timeout or settings.ads_timeout_seconds
        self.http = session or requests.Session()

    def get_active_advertisement(self, advertisement_id: str,
                                 headers: Optional[Dict[str, str]] = None) -> AdvertisementSnapshot:
        url = f"{self.base_url}/advertisements/{advertisement_id}"
        try:
            response = self.http.get(url, headers=headers or {}, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"❌ Advertisement service unreachable: {e}")
            raise UpstreamUnavailableError("Advertisement service is unavailable", original_error=e) from e

        if response.status_code == 404:
            raise NotFoundError("Advertisement not found", field="advertisement_id",
                                context={"advertisement_id": advertisement_id})
        if response.status_code >= 500:
            raise UpstreamUnavailableError(f"Advertisement service returned {response.status_code}")
        if response.status_code != 200:
            raise UpstreamUnavailableError(f"Unexpected advertisement service response {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamUnavailableError("Advertisement service returned invalid JSON", original_error=e) from e
        return snapshot_from_payload(payload)

class InMemoryAdvertisementDirectory:
    """Directory backed by a dict of advertisement payloads (tests, local runs)"""

    def __init__(self, advertisements: Dict[str, dict] = None):
        self.advertisements = dict(advertisements or {})

    def add(self, payload: dict) -> None:
        self.advertisements[str(payload["id"])] = payload

    def get_active_advertisement(self, advertisement_id: str,
                                 headers: Optional[Dict[str, str]] = None) -> AdvertisementSnapshot:
        payload = self.advertisements.get(advertisement_id)
        if payload is None:
            raise NotFoundError("Advertisement not found", field="advertisement_id",
                                context={"advertisement_id": advertisement_id})
        return snapshot_from_payload(payload)

ALLOWED_PROOF_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "application/pdf": ".pdf",
}

class LocalProofStorage:
    """Stores payment-proof uploads on local disk"""

    def __init__(self, upload_path: str = None, max_file_size: int = None):
        self.upload_path = upload_path or settings.upload_path
        self.max_file_size = max_file_size or settings.max_file_size

    def store_payment_proof(self, content: bytes, content_type: str, filename: str = None) -> str:
        if content_type not in ALLOWED_PROOF_TYPES:
            raise ValidationError("Invalid file type", field="proof",
                                  context={"allowed": sorted(ALLOWED_PROOF_TYPES)})
        if not content:
            raise ValidationError("No file uploaded", field="proof")
        if len(content) > self.max_file_size:
            raise ValidationError("File too large", field="proof", context={"max_file_size": self.max_file_size})

        ext = os.path.splitext(filename or "")[1].lower() or ALLOWED_PROOF_TYPES[content_type]
        name = f"{uuid.uuid4()}{ext}"
        os.makedirs(self.upload_path, exist_ok=True)
        with open(os.path.join(self.upload_path, name), "wb") as f:
            f.write(content)
        logger.info(f"📎 Stored payment proof {name} ({len(content)} bytes)")
        return f"/uploads/{name}"

    def discard(self, proof_ref: str) -> None:
        """Remove a stored proof that no trade ended up referencing."""
        path = os.path.join(self.upload_path, os.path.basename(proof_ref))
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"🗑️ Discarded unreferenced payment proof {os.path.basename(path)}")

class WalletProvisioner(Protocol):
    def provision(self, user_id: str, asset: Asset) -> str:
        ...

DEMO_BTC_ADDRESSES = {
    "mainnet": "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa",
    "testnet": "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx",
}

class DemoWalletProvisioner:
    """Placeholder deposit addresses; no keys are generated or stored"""

    def __init__(self, network: str = None):
        self.network = network or settings.btc_network

    def provision(self, user_id: str, asset: Asset) -> str:
        if asset == Asset.BTC:
            return DEMO_BTC_ADDRESSES["testnet" if self.network == "testnet" else "mainnet"]
        digest = hashlib.sha256(f"{user_id}:{asset.value}".encode("utf-8")).hexdigest()
        return f"0x{digest[:40]}"
