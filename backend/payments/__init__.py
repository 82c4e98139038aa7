"""
Module 'payments' (feature-first): point d'entrée public.
Réunit fournisseurs (providers), normalisation des callbacks, repository BD,
ouverture de session (service) et réconciliation.
"""

from .callback_input import CallerType, classify_caller, parse_callback_fields
from .providers import get_provider, method_from_slug

__all__ = [
    "CallerType",
    "classify_caller",
    "parse_callback_fields",
    "get_provider",
    "method_from_slug",
]
