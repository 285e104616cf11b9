"""
Module 'payments' (feature-first): sessions de paiement et réconciliation des factures.
- errors: taxonomie des erreurs typées
- events: variantes d'événements passerelle (completed, expired, failed, unknown)
- stripe_client: adaptateur passerelle (sessions, intents, signature webhook)
- orchestrator: création de session/intent liée à une facture
- reconciler: machine à états idempotente pilotée par les webhooks
- effects: effets post-commit (email, événement de commission) hors du chemin de requête
- status: lecture de l'état courant (polling de la page résultat)
- views: endpoints /api/v1/payments

Les sous-modules s'importent directement (pas de réexport ici, le ledger dépend de errors).
"""
