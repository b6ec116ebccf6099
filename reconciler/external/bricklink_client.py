import base64
import hashlib
import hmac
import secrets
import time
import urllib.parse
from typing import Any, Dict, List, Optional
import logging

import requests
from pydantic import ValidationError

from config.settings import settings
from reconciler.models.errors import ExternalApiError, MissingCredentialsError
from reconciler.models.schemas import ItemType, SubsetEntry
from reconciler.utils.rate_limiter import RequestSpacingLimiter

logger = logging.getLogger(__name__)


def _rfc3986(value: str) -> str:
    return urllib.parse.quote(str(value), safe="~")


def normalize_subset_entries(
    data: Any, item_type: Optional[str] = None
) -> List[SubsetEntry]:
    """Flatten BrickLink's ``[{entries: [...]}, ...]`` groups into one list.

    Entries that do not validate are dropped; ``item_type`` keeps only
    entries whose ``item.type`` matches.
    """
    if isinstance(data, dict):
        groups = data.get("entries") or []
    elif isinstance(data, list):
        groups = data
    else:
        return []

    raw_entries = []
    for group in groups:
        if isinstance(group, dict) and isinstance(group.get("entries"), list):
            raw_entries.extend(group["entries"])
        elif group:
            raw_entries.append(group)

    entries = []
    for raw in raw_entries:
        try:
            entry = SubsetEntry.model_validate(raw)
        except ValidationError as e:
            logger.debug(f"Skipping malformed subset entry {raw!r}: {e}")
            continue
        if item_type and entry.item.type != item_type:
            continue
        entries.append(entry)
    return entries


class BrickLinkClient:
    """Authenticated, rate-limited GET access to the BrickLink catalog API"""

    def __init__(
        self,
        rate_limiter: Optional[RequestSpacingLimiter] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.consumer_key = settings.bricklink_consumer_key
        self.consumer_secret = settings.bricklink_consumer_secret
        self.token_value = settings.bricklink_token_value
        self.token_secret = settings.bricklink_token_secret
        self.base_url = (base_url or settings.bricklink_base_url).rstrip("/")
        self.timeout = timeout or settings.bricklink_timeout
        self.rate_limiter = rate_limiter or RequestSpacingLimiter(
            settings.bricklink_min_interval_ms
        )

    @property
    def has_credentials(self) -> bool:
        return all(
            [
                self.consumer_key,
                self.consumer_secret,
                self.token_value,
                self.token_secret,
            ]
        )

    @property
    def call_count(self) -> int:
        return self.rate_limiter.call_count

    def _generate_oauth_signature(
        self, method: str, url: str, params: Dict[str, str]
    ) -> str:
        """Generate OAuth 1.0 HMAC-SHA1 signature for BrickLink API"""
        normalized = "&".join(
            f"{_rfc3986(k)}={_rfc3986(v)}" for k, v in sorted(params.items())
        )
        base_string = f"{method.upper()}&{_rfc3986(url)}&{_rfc3986(normalized)}"
        signing_key = f"{_rfc3986(self.consumer_secret)}&{_rfc3986(self.token_secret)}"

        signature = hmac.new(
            signing_key.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha1
        ).digest()
        return base64.b64encode(signature).decode("utf-8")

    def _get_oauth_headers(
        self, method: str, url: str, params: Optional[Dict] = None
    ) -> Dict[str, str]:
        """Generate OAuth headers for API request"""
        oauth_params = {
            "oauth_consumer_key": self.consumer_key,
            "oauth_token": self.token_value,
            "oauth_signature_method": "HMAC-SHA1",
            "oauth_timestamp": str(int(time.time())),
            "oauth_nonce": secrets.token_hex(16),
            "oauth_version": "1.0",
        }

        all_params = {**(params or {}), **oauth_params}
        oauth_params["oauth_signature"] = self._generate_oauth_signature(
            method, url, all_params
        )

        auth_header = "OAuth " + ", ".join(
            f'{_rfc3986(k)}="{_rfc3986(v)}"' for k, v in sorted(oauth_params.items())
        )
        return {"Authorization": auth_header, "Accept": "application/json"}

    def fetch(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        """GET ``path`` and return the envelope's ``data``.

        Every call waits for the shared request spacing and counts against
        the run's budget, including calls that fail.
        """
        if not self.has_credentials:
            raise MissingCredentialsError("BrickLink credentials are not configured", path=path)

        url = f"{self.base_url}{path}"
        self.rate_limiter.wait_for_slot()

        try:
            headers = self._get_oauth_headers("GET", url, params)
            response = requests.get(
                url, params=params, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise ExternalApiError(f"BrickLink request failed: {e}", path=path) from e

        if response.status_code != 200:
            raise ExternalApiError(
                f"BrickLink {response.status_code}: {response.text[:200]}",
                path=path,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ExternalApiError(
                "BrickLink returned a non-JSON body", path=path, status_code=200
            ) from e

        if not isinstance(payload, dict):
            raise ExternalApiError(
                "BrickLink returned an unexpected envelope", path=path, status_code=200
            )

        # BrickLink returns HTTP 200 with the real status in meta.code
        meta = payload.get("meta") or {}
        code = meta.get("code")
        if code is not None and code != 200:
            raise ExternalApiError(
                f"BrickLink meta {code}: {meta.get('message', 'error')} {meta.get('description', '')}".strip(),
                path=path,
                status_code=code,
            )

        return payload.get("data")

    def get_subsets(self, item_type: ItemType, item_no: str) -> Any:
        """Raw subset groups of a SET or MINIFIG"""
        path = f"/items/{item_type.value}/{urllib.parse.quote(item_no, safe='')}/subsets"
        return self.fetch(path)

    def get_set_minifigs(self, set_num: str) -> List[SubsetEntry]:
        data = self.get_subsets(ItemType.SET, set_num)
        return normalize_subset_entries(data, ItemType.MINIFIG.value)

    def get_minifig_parts(self, minifig_no: str) -> List[SubsetEntry]:
        data = self.get_subsets(ItemType.MINIFIG, minifig_no)
        return normalize_subset_entries(data, ItemType.PART.value)
