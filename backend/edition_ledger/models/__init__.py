from .line_items import LineItem, NfcTag, ProductEditionLock, STATUS_ACTIVE, STATUS_INACTIVE
from .events import EditionEvent, EditionEventType, AppendOnlyViolation

__all__ = [
    'LineItem', 'NfcTag', 'ProductEditionLock', 'STATUS_ACTIVE', 'STATUS_INACTIVE',
    'EditionEvent', 'EditionEventType', 'AppendOnlyViolation',
]
