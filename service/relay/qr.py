"""Lazy QR rendering for authentication challenges."""
from __future__ import annotations

import base64
import io
import logging
import re
from dataclasses import dataclass, replace
from typing import Tuple

import qrcode

from .errors import EncodingError
from .state import SessionState

logger = logging.getLogger(__name__)

_DATA_URL_PREFIX = re.compile(r"^data:image/(png|jpeg|jpg);base64,")


@dataclass(frozen=True)
class EncodedChallenge:
    encoded: str
    raw: str
    encoding: str = "base64"


def render_data_url(raw: str) -> str:
    """Render ``raw`` as a PNG QR code and return it as a data URL."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=2,
    )
    qr.add_data(raw)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def strip_data_url(data_url: str) -> str:
    return _DATA_URL_PREFIX.sub("", data_url)


def get_encoded(state: SessionState) -> Tuple[EncodedChallenge, SessionState]:
    """
    Return the encoded challenge for ``state`` plus the state carrying the cache.

    The image is rendered at most once per raw challenge: when ``state``
    already holds an encoded value it is returned untouched.
    """
    raw = state.raw_challenge
    if not raw:
        raise EncodingError("QR code not available at the moment. Try again shortly.")

    if state.encoded_challenge:
        return EncodedChallenge(encoded=strip_data_url(state.encoded_challenge), raw=raw), state

    try:
        data_url = render_data_url(raw)
    except Exception as exc:
        logger.exception("qr.render_failed: %s", exc)
        raise EncodingError("Failed to generate the QR code.", code="qr_render_failed") from exc

    cached = replace(state, encoded_challenge=data_url)
    return EncodedChallenge(encoded=strip_data_url(data_url), raw=raw), cached


__all__ = ["EncodedChallenge", "get_encoded", "render_data_url", "strip_data_url"]
