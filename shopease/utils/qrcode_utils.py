import qrcode
import base64
from io import BytesIO

def generate_qr_code(data: str, box_size: int = 8, border: int = 4) -> str:
    """
    Génère l'image PNG d'un payload KHQR et la retourne en data URL base64.

    Args:
        data: le payload KHQR (chaîne EMV, ~150-200 caractères)
        box_size: la taille de chaque module du QR code
        border: la marge (en modules), 4 minimum pour les lecteurs bancaires

    Returns:
        "data:image/png;base64,..." prêt pour une balise <img>
    """
    qr = qrcode.QRCode(
        version=None,  # taille ajustée à la longueur du payload
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffered = BytesIO()
    img.save(buffered, format="PNG")
    img_str = base64.b64encode(buffered.getvalue()).decode("utf-8")

    return f"data:image/png;base64,{img_str}"
