"""
WireGuard client QR artifacts

Encodes a client configuration document into a QR code for import by the
WireGuard mobile apps. The document bytes are carried as a single 8-bit byte
segment so decoding yields the exact UTF-8 text that was encoded.
"""

import base64
import io
import logging
from typing import Dict, List, Tuple

import qrcode
import qrcode.util
from qrcode.exceptions import DataOverflowError
from qrcode.image.pil import PilImage

from wgprovision.exceptions import EncodingError

logger = logging.getLogger(__name__)

ERROR_CORRECTION_LEVELS: Dict[str, int] = {
    "L": qrcode.constants.ERROR_CORRECT_L,
    "M": qrcode.constants.ERROR_CORRECT_M,
    "Q": qrcode.constants.ERROR_CORRECT_Q,
    "H": qrcode.constants.ERROR_CORRECT_H,
}


class ClientArtifact:
    """
    QR representation of one client document

    Attributes:
        payload: Exact bytes carried by the symbol
        version: QR version (1-40) picked to fit the payload
        error_correction: Error correction level letter
        matrix: Module matrix including the quiet zone, True is dark
    """

    def __init__(self, qr: qrcode.QRCode, payload: bytes, error_correction: str):
        self._qr = qr
        self.payload = payload
        self.version: int = qr.version
        self.error_correction = error_correction
        self.matrix: Tuple[Tuple[bool, ...], ...] = tuple(
            tuple(row) for row in qr.get_matrix()
        )

    @property
    def payload_text(self) -> str:
        return self.payload.decode("utf-8")

    @property
    def segments(self) -> List[bytes]:
        """Data segments handed to the encoder, in encoding order"""
        return [segment.data for segment in self._qr.data_list]

    @property
    def size(self) -> int:
        """Width of the symbol in modules, quiet zone included"""
        return len(self.matrix)

    def to_image(self) -> PilImage:
        return self._qr.make_image(
            image_factory=PilImage,
            fill_color="black",
            back_color="white",
        )

    def to_png(self) -> bytes:
        buffer = io.BytesIO()
        self.to_image().save(buffer)
        return buffer.getvalue()

    def to_data_url(self) -> str:
        """PNG rendering as a data: URL, ready for an <img> tag"""
        encoded = base64.b64encode(self.to_png()).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    def __eq__(self, other) -> bool:
        if not isinstance(other, ClientArtifact):
            return NotImplemented
        return (
            self.payload == other.payload
            and self.error_correction == other.error_correction
            and self.matrix == other.matrix
        )

    def __repr__(self) -> str:
        return (
            f"ClientArtifact(version={self.version}, "
            f"error_correction={self.error_correction!r}, size={self.size})"
        )


def encode_client_config(
    config_text: str,
    error_correction: str = "M",
    box_size: int = 10,
    border: int = 4,
) -> ClientArtifact:
    """
    Encode a client configuration document as a QR code

    Args:
        config_text: Rendered client document
        error_correction: One of L, M, Q, H
        box_size: Pixels per module in rendered images
        border: Quiet zone width in modules

    Returns:
        ClientArtifact for the document

    Raises:
        EncodingError: If the document exceeds the capacity of a version 40
            symbol at the requested error correction level
        ValueError: If error_correction is not a known level
    """
    if error_correction not in ERROR_CORRECTION_LEVELS:
        raise ValueError(f"Unknown QR error correction level: {error_correction}")

    payload = config_text.encode("utf-8")

    qr = qrcode.QRCode(
        version=None,  # smallest version that fits
        error_correction=ERROR_CORRECTION_LEVELS[error_correction],
        box_size=box_size,
        border=border,
    )
    qr.add_data(qrcode.util.QRData(payload, mode=qrcode.util.MODE_8BIT_BYTE))

    try:
        qr.make(fit=True)
    except DataOverflowError:
        logger.error(
            f"Client configuration too large for QR encoding: {len(payload)} bytes "
            f"at level {error_correction}"
        )
        raise EncodingError(payload_size=len(payload), error_correction=error_correction)

    logger.debug(f"Encoded {len(payload)} byte client configuration as QR version {qr.version}")

    return ClientArtifact(qr=qr, payload=payload, error_correction=error_correction)
