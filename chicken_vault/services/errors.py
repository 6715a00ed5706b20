"""
Service: errors.py
Rôle:
- Centraliser la taxonomie d'erreurs métier; les routes les traduisent en réponses HTTP.

Familles:
- PreconditionViolation : mauvaise phase, joueurs manquants, preflight incomplet (jamais retenté).
- TransientIOFailure    : verrou fichier / synchronisation en cours, après épuisement des retries.
- DataIntegrityViolation: code de carte invalide, soumission mal formée.
- ExternalServiceFailure: échecs du service IA (transport, JSON invalide).
- ConfigurationFailure  : chemin de classeur absent/inexistant au démarrage.
"""


class VaultError(Exception):
    """Base de toutes les erreurs du moteur Chicken Vault."""


class PreconditionViolation(VaultError):
    pass


class TransientIOFailure(VaultError):
    pass


class DataIntegrityViolation(VaultError):
    pass


class ExternalServiceFailure(VaultError):
    pass


class AIServiceError(ExternalServiceFailure):
    """Échec de communication avec le fournisseur IA (HTTP, timeout, clé absente)."""


class MalformedModelOutput(AIServiceError):
    """Le modèle a répondu avec un JSON inexploitable."""


class ConfigurationFailure(VaultError):
    pass
