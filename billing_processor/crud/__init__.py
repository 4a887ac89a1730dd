# CRUD operations package

from .account import account_crud
from .addon_entitlement import addon_entitlement_crud
from .processing_record import processing_record_crud
from .subscription_history import subscription_history_crud
from .entitlement_freeze import entitlement_freeze_crud

__all__ = [
    'account_crud',
    'addon_entitlement_crud',
    'processing_record_crud',
    'subscription_history_crud',
    'entitlement_freeze_crud',
]
