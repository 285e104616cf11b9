"""
Erreurs typées du moteur de paiement.
- Chaque erreur porte un status HTTP et un code stable, rendus par le handler de l'app.
- Les violations métier (NotFound, Forbidden, AlreadySettled) remontent telles quelles à l'appelant.
- Les doublons de notification ne sont jamais des erreurs: ils se résolvent en no-op.
"""


class PaymentError(Exception):
    status_code = 400
    code = "payment_error"
    default_detail = "Erreur de paiement"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NotFound(PaymentError):
    status_code = 404
    code = "not_found"
    default_detail = "Ressource introuvable"


class Forbidden(PaymentError):
    status_code = 403
    code = "forbidden"
    default_detail = "Accès non autorisé à cette facture"


class AlreadySettled(PaymentError):
    status_code = 409
    code = "already_settled"
    default_detail = "La facture est déjà payée"


class InvoiceNotPayable(PaymentError):
    status_code = 409
    code = "invoice_not_payable"
    default_detail = "La facture ne peut pas être payée dans son état actuel"


class ReceiptUnavailable(PaymentError):
    status_code = 409
    code = "receipt_unavailable"
    default_detail = "Reçu disponible uniquement pour une facture payée"


class InvalidSignature(PaymentError):
    status_code = 400
    code = "invalid_signature"
    default_detail = "Signature du webhook invalide"


class MalformedNotification(PaymentError):
    status_code = 400
    code = "malformed_notification"
    default_detail = "Payload du webhook invalide"


class GatewayUnavailable(PaymentError):
    """Transitoire: l'appelant peut réessayer la création de session avec backoff."""
    status_code = 503
    code = "gateway_unavailable"
    default_detail = "Passerelle de paiement indisponible, réessayez plus tard"


class GatewayError(PaymentError):
    """Refus définitif de la passerelle (requête invalide, clé révoquée...)."""
    status_code = 502
    code = "gateway_error"
    default_detail = "La passerelle de paiement a refusé la requête"


class WebhookNotConfigured(PaymentError):
    status_code = 500
    code = "webhook_not_configured"
    default_detail = "STRIPE_WEBHOOK_SECRET non configuré"


class LedgerUnavailable(PaymentError):
    status_code = 503
    code = "ledger_unavailable"
    default_detail = "Stockage des paiements indisponible"
