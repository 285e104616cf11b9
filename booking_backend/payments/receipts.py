"""
Reçu de paiement PDF (ReportLab), généré en mémoire.
- Servi au propriétaire d'une facture payée (GET /invoices/{id}/receipt).
- Joint à l'email de confirmation, donc produit hors du chemin de requête du webhook.
"""
from datetime import datetime, timezone
from io import BytesIO
from typing import Any, List, Optional

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

ISSUER_NAME = "Gaith Group"
ISSUER_TAGLINE = "Hotel Booking Services"


def format_amount(amount: int, currency: str) -> str:
    return f"{amount / 100:.2f} {currency.upper()}"


def receipt_filename(effect) -> str:
    return f"receipt-{effect.invoice_number or effect.invoice_id}.pdf"


def _paid_on(value: Optional[str]) -> str:
    if value:
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00")).strftime("%Y-%m-%d")
        except ValueError:
            return str(value)
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def render_receipt_pdf(effect) -> bytes:
    """
    Construit le reçu d'un paiement confirmé.
    - effect: PaymentConfirmed (montant en unités mineures, références facture et transaction)
    - Retour: octets PDF
    """
    buf = BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=A4,
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=16 * mm,
        bottomMargin=16 * mm,
        title=f"Receipt {effect.invoice_number or effect.invoice_id}",
        author=ISSUER_NAME,
    )
    border = colors.HexColor("#e5e7eb")
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(name="ReceiptTitle", parent=styles["Heading1"], fontName="Helvetica-Bold",
                              fontSize=18, alignment=1, spaceAfter=6))
    styles.add(ParagraphStyle(name="Muted", parent=styles["Normal"], fontSize=9,
                              textColor=colors.HexColor("#6b7280")))

    story: List[Any] = [
        Paragraph("PAYMENT RECEIPT", styles["ReceiptTitle"]),
        Paragraph(f"<b>{ISSUER_NAME}</b>", styles["Normal"]),
        Paragraph(ISSUER_TAGLINE, styles["Muted"]),
        Spacer(1, 10),
    ]

    rows = [
        ["Receipt #", effect.invoice_number or effect.invoice_id],
        ["Date", _paid_on(effect.processed_at)],
        ["Client", effect.client_name or ""],
        ["Email", effect.recipient_address or ""],
        ["Hotel", effect.hotel_name or ""],
        ["Payment", effect.payment_id],
        ["Transaction", effect.transaction_id or effect.gateway_ref or ""],
        ["Amount paid", format_amount(effect.amount, effect.currency)],
    ]
    table = Table(rows, colWidths=[doc.width * 0.3, doc.width * 0.7])
    table.setStyle(TableStyle([
        ("BOX", (0, 0), (-1, -1), 0.25, border),
        ("INNERGRID", (0, 0), (-1, -1), 0.25, border),
        ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
        ("FONTNAME", (1, -1), (1, -1), "Helvetica-Bold"),
        ("BACKGROUND", (0, 0), (0, -1), colors.whitesmoke),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
    ]))
    story.append(table)
    story.append(Spacer(1, 12))
    story.append(Paragraph("Status: PAID", styles["Normal"]))
    story.append(Paragraph("Thank you for your payment.", styles["Muted"]))

    doc.build(story)
    return buf.getvalue()
