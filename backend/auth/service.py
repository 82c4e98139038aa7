from typing import Dict, Any
from .repository import get_user_from_access_token as _repo_get_user_from_token

def determine_role(metadata: Dict[str, Any] | None) -> str:
    """Rôle applicatif depuis user_metadata.role: 'admin' ou 'user' (défaut)."""
    role_lower = str((metadata or {}).get("role", "")).lower()
    if role_lower == "admin":
        return "admin"
    return "user"

# --- Intégration sécurité ---

def get_user_from_token(access_token: str) -> Dict[str, Any]:
    """Normalise user issu de supabase.auth.get_user(access_token):
    - Retourne {id, email, metadata, role, token}
    - Le rôle gouverne l'accès au paiement ADMIN_BYPASS et au balayage des conflits
    """
    raw = _repo_get_user_from_token(access_token)
    metadata = raw.get("user_metadata") or {}
    return {
        "id": raw.get("id"),
        "email": raw.get("email"),
        "metadata": metadata,
        "role": determine_role(metadata),
        "token": access_token,
    }
