import qrcode
import qrcode.image.svg


def make_login_qr_svg_bytes(url: str) -> bytes:
    """SVG QR code for a handoff URL, scanned by another device to sign in."""
    img = qrcode.make(
        url,
        image_factory=qrcode.image.svg.SvgImage,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        border=1,
    )
    return img.to_string()
