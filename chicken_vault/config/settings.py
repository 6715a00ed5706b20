"""
Configuration de l'application (Settings)
=========================================

Rôle
----
- Centraliser les paramètres du serveur (host/port, classeur partagé, IA, logs).
- Les valeurs par défaut conviennent pour un environnement de dev local.
- Les variables peuvent être surchargées via un fichier `.env` ou l'environnement.

Intégrations
------------
- `pydantic-settings` charge automatiquement les variables d'env et `.env`.
- `build_engine()` lit `WORKBOOK_PATH` : absent ou inexistant -> échec immédiat au démarrage.
- Le chemin du classeur n'est PAS modifiable à chaud (l'API refuse toute surcharge).

Exemples de `.env`
------------------
WORKBOOK_PATH="/Users/dealer/OneDrive/chicken-vaults.xlsx"
ACK_WRITES_ENABLED=true
OPENAI_API_KEY="sk-..."
OPENAI_QUESTION_MODEL="gpt-5-nano"
DEALER_TOKEN="mettre-une-valeur-secrète-si-le-serveur-est-exposé"
"""
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Nom du service (apparaît dans /health)
    APP_NAME: str = "Chicken Vault Server"
    HOST: str = "0.0.0.0"
    PORT: int = 4000
    LOG_LEVEL: str = "INFO"

    # Jeton croupier optionnel (vide = routes ouvertes, usage LAN)
    DEALER_TOKEN: str = ""

    # Classeur partagé (dossier synchronisé OneDrive en pratique)
    WORKBOOK_PATH: str = ""
    ACK_WRITES_ENABLED: bool = False

    # Analyse IA des questions (fournisseur compatible OpenAI)
    OPENAI_API_KEY: str = ""
    OPENAI_API_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_TRANSCRIBE_MODEL: str = "gpt-4o-transcribe"
    OPENAI_QUESTION_MODEL: str = "gpt-5-nano"
    OPENAI_TRANSCRIBE_LANGUAGE: str = ""
    ENABLE_AI_TEXT_ENDPOINT: bool = True

    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]

    # - lit le fichier .env (UTF-8) si présent
    # - ignore les clés supplémentaires pour éviter les erreurs
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
