"""Pairing QR rendering."""

import base64
import io

import qrcode


def render_data_uri(code: str) -> str:
    """Render a pairing code as a PNG data URI for the status API."""
    img = qrcode.make(code)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def render_ascii(code: str) -> str:
    """Render a pairing code as terminal-friendly ASCII art."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(code)
    qr.make(fit=True)
    out = io.StringIO()
    qr.print_ascii(out=out, invert=True)
    return out.getvalue()
