from __future__ import annotations

import io


def render_svg(challenge: str) -> str | None:
    """
    Render a pairing challenge as an SVG QR code.

    Returns None when the optional `qrcode` extra is not installed.
    """

    try:
        import qrcode  # optional extra
        from qrcode.image.svg import SvgImage
    except ImportError:
        return None

    img = qrcode.make(challenge, image_factory=SvgImage)
    return img.to_string(encoding="unicode")


def render_ascii(challenge: str) -> str | None:
    try:
        import qrcode  # optional extra
    except ImportError:
        return None

    qr = qrcode.QRCode(border=1)
    qr.add_data(challenge)
    qr.make(fit=True)
    buf = io.StringIO()
    qr.print_ascii(out=buf, invert=True)
    return buf.getvalue()
