# herbionyx/services/qr/image_scan.py
import asyncio
from typing import Optional

import cv2
import numpy as np


def decode_qr_code_image(image_path: str) -> Optional[str]:
    """
    Pull the raw QR string out of an image file.
    Returns None when no code is found.
    """
    img = cv2.imread(image_path)
    if img is None:
        raise FileNotFoundError(f"could not read image: {image_path}")
    return _detect(img)


def decode_qr_code_bytes(image_bytes: bytes) -> Optional[str]:
    """Same as decode_qr_code_image, for uploads held in memory."""
    arr = np.frombuffer(image_bytes, dtype=np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if img is None:
        raise ValueError("uploaded file is not a readable image")
    return _detect(img)


def _detect(img) -> Optional[str]:
    detector = cv2.QRCodeDetector()
    data, _points, _ = detector.detectAndDecode(img)
    return data or None


class ImageScanSource:
    """Scan source backed by an image file (photo upload)."""

    def __init__(self, image_path: str):
        self.image_path = image_path

    async def read(self) -> str:
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, decode_qr_code_image, self.image_path)
        if not data:
            raise ValueError(f"no QR code found in {self.image_path}")
        return data
