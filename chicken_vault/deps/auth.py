"""
Dépendance d'authentification croupier
=======================================

Objectif
--------
Fournir une *dependency* FastAPI `dealer_required` pour les commandes du croupier.

- `settings.DEALER_TOKEN` vide : routes ouvertes (usage LAN, valeur par défaut).
- Sinon : `Authorization: Bearer <DEALER_TOKEN>` obligatoire.

Pourquoi accepter le préflight CORS ?
-------------------------------------
Le navigateur envoie une requête **OPTIONS** sans header `Authorization`; le middleware
CORS y répond avant les routes, donc la protection ne s'applique qu'aux méthodes réelles.

Comportement & codes retour
---------------------------
- 401 si aucun Bearer n'est fourni alors qu'un jeton est configuré.
- 403 si le Bearer fourni est invalide.
- True sinon.
"""

from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chicken_vault.config.settings import settings

# Schéma Bearer (désactive l'erreur auto pour qu'on rende nos 401/403)
bearer = HTTPBearer(auto_error=False)


def dealer_required(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)):
    expected = settings.DEALER_TOKEN
    if not expected:
        return True

    if credentials and (credentials.scheme or "").lower() == "bearer":
        if secrets.compare_digest(credentials.credentials, expected):
            return True
        raise HTTPException(status_code=403, detail="Invalid token")

    raise HTTPException(status_code=401, detail="Dealer authentication required")
