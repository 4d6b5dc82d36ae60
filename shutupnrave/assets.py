"""Verification images: QR rendering and hosting.

Email clients (Gmail, Outlook) block data: URLs, so the image is uploaded
to Cloudinary when credentials are configured. Without a host, or when
an upload fails, the image is inlined as a data: URL instead.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
import base64
import hashlib
import io
import time
from typing import Dict, Optional

import httpx
import qrcode
import structlog

logger = structlog.get_logger(__name__)

MIN_QR_SIZE_PX = 200
QR_FOLDER = "shutupnrave/qr-codes"


class AssetHostError(Exception):
    pass


def render_qr_png(
    payload: str, *, fill_color: str = "#FDC700",
    back_color: str = "#000000", border: int = 2,
) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=border,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    # scale boxes so the square image is at least MIN_QR_SIZE_PX wide
    modules = qr.modules_count + 2 * border
    qr.box_size = max(qr.box_size, -(-MIN_QR_SIZE_PX // modules))
    img = qr.make_image(fill_color=fill_color, back_color=back_color)
    buf = io.BytesIO()
    img.save(buf, "PNG")
    return buf.getvalue()


def to_data_url(png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


def is_data_url(url: Optional[str]) -> bool:
    return bool(url) and url.startswith("data:")


# ----------------------------
# Asset Store Interface
# ----------------------------
class AssetStore(ABC):
    @abstractmethod
    async def upload(self, png: bytes, public_id: str) -> str:
        """Host `png` and return its URL. Raises AssetHostError."""

    @abstractmethod
    async def delete(self, url: str) -> None:
        """Remove a previously uploaded image. Raises AssetHostError."""


class InlineAssetStore(AssetStore):
    """No external host: images travel inside the email."""

    async def upload(self, png: bytes, public_id: str) -> str:
        return to_data_url(png)

    async def delete(self, url: str) -> None:
        return None


class CloudinaryStore(AssetStore):
    def __init__(self, http: httpx.AsyncClient, *, cloud_name: str,
                 api_key: str, api_secret: str,
                 folder: str = QR_FOLDER) -> None:
        self.http = http
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.folder = folder

    def _endpoint(self, action: str) -> str:
        return (f"https://api.cloudinary.com/v1_1/{self.cloud_name}"
                f"/image/{action}")

    def sign(self, params: Dict[str, str]) -> str:
        to_sign = "&".join(f"{k}={params[k]}" for k in sorted(params))
        return hashlib.sha1(
            (to_sign + self.api_secret).encode()
        ).hexdigest()

    def public_id_from_url(self, url: str) -> str:
        name = url.rstrip("/").rsplit("/", 1)[-1]
        return f"{self.folder}/{name.rsplit('.', 1)[0]}"

    async def _post(self, action: str, params: Dict[str, str],
                    files: Optional[dict] = None) -> dict:
        data = dict(params)
        data["api_key"] = self.api_key
        data["signature"] = self.sign(params)
        try:
            r = await self.http.post(self._endpoint(action), data=data,
                                     files=files)
            r.raise_for_status()
            body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise AssetHostError(f"cloudinary {action} failed: {e!r}") from e
        if not isinstance(body, dict):
            raise AssetHostError(f"cloudinary {action} returned {body!r}")
        return body

    async def upload(self, png: bytes, public_id: str) -> str:
        params = {
            "folder": self.folder,
            "public_id": public_id,
            "timestamp": str(int(time.time())),
        }
        body = await self._post(
            "upload", params, files={"file": (f"{public_id}.png", png,
                                              "image/png")},
        )
        url = body.get("secure_url")
        if not url:
            raise AssetHostError("cloudinary upload returned no secure_url")
        return url

    async def delete(self, url: str) -> None:
        if is_data_url(url):
            return
        public_id = self.public_id_from_url(url)
        await self._post("destroy", {
            "public_id": public_id,
            "timestamp": str(int(time.time())),
        })
        logger.info("assets.deleted", public_id=public_id)


def new_asset_store(settings, http: httpx.AsyncClient) -> AssetStore:
    if settings.cloudinary_enabled:
        return CloudinaryStore(
            http,
            cloud_name=settings.cloudinary_cloud_name,
            api_key=settings.cloudinary_api_key,
            api_secret=settings.cloudinary_api_secret,
        )
    return InlineAssetStore()
