"""
Collateral Module

Collateral pledged against loans and the valuation collaborator used by the
classification engine to net collateral off exposure after haircuts.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .currency import Currency, Money
from .errors import ValidationError
from .storage import StorageInterface, StorageRecord, restore_fields

logger = logging.getLogger(__name__)


class CollateralType(Enum):
    """Collateral categories with their valuation factor"""
    MOVABLE = "movable"        # Vehicles, equipment, stock
    IMMOVABLE = "immovable"    # Land and buildings
    FINANCIAL = "financial"    # Deposits, securities
    GUARANTEE = "guarantee"    # Personal or group guarantees
    OTHER = "other"


VALUATION_FACTORS = {
    CollateralType.MOVABLE: Decimal('0.60'),
    CollateralType.IMMOVABLE: Decimal('0.80'),
    CollateralType.FINANCIAL: Decimal('1.00'),
    CollateralType.GUARANTEE: Decimal('0.20'),
    CollateralType.OTHER: Decimal('0.50'),
}


@dataclass
class Collateral(StorageRecord):
    """An item pledged against a loan"""
    loan_id: str
    organization_id: str
    collateral_type: CollateralType
    currency: Currency
    collateral_value: Money
    extended_value: Optional[Money] = None    # Revalued amount, replaces collateral_value
    haircut_rate: Optional[Decimal] = None    # Overrides the type's haircut, e.g. 0.20
    description: Optional[str] = None

    @property
    def haircut(self) -> Decimal:
        if self.haircut_rate is not None:
            return self.haircut_rate
        return Decimal('1') - VALUATION_FACTORS[self.collateral_type]

    @property
    def effective_value(self) -> Money:
        """Appraised value after haircut"""
        base = self.extended_value if self.extended_value is not None else self.collateral_value
        return (base * (Decimal('1') - self.haircut)).floor_zero()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Collateral':
        currency = Currency.from_code(data['currency'])
        extended = data.get('extended_value')
        data = restore_fields(
            data,
            currency=currency,
            money=('collateral_value',),
            decimals=('haircut_rate',),
            enums={'collateral_type': CollateralType}
        )
        data['currency'] = currency
        data['extended_value'] = Money(Decimal(extended), currency) if extended not in (None, "") else None
        return cls(**data)


class CollateralValuator(ABC):
    """Supplies the haircut-adjusted collateral value for a loan"""

    @abstractmethod
    def effective_value(self, loan) -> Money:
        pass


class CollateralRegistry(CollateralValuator):
    """Storage-backed collateral register and valuator"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.table_name = "collaterals"

    def register(
        self,
        loan,
        collateral_type: CollateralType,
        collateral_value: Money,
        extended_value: Optional[Money] = None,
        haircut_rate: Optional[Decimal] = None,
        description: Optional[str] = None
    ) -> Collateral:
        """Pledge collateral against a loan"""
        if collateral_value.currency != loan.currency:
            raise ValidationError("Collateral currency must match loan currency")
        if collateral_value.is_negative():
            raise ValidationError("Collateral value cannot be negative")
        if haircut_rate is not None and not (Decimal('0') <= haircut_rate <= Decimal('1')):
            raise ValidationError("Haircut rate must be between 0 and 1")

        now = self.clock.now()
        collateral = Collateral(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            organization_id=loan.organization_id,
            collateral_type=collateral_type,
            currency=loan.currency,
            collateral_value=collateral_value,
            extended_value=extended_value,
            haircut_rate=haircut_rate,
            description=description
        )
        self.storage.save(self.table_name, collateral.id, collateral.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.COLLATERAL_REGISTERED,
                entity_type="collateral",
                entity_id=collateral.id,
                organization_id=loan.organization_id,
                metadata={
                    "loan_id": loan.id,
                    "collateral_type": collateral_type,
                    "collateral_value": collateral_value.to_string(),
                    "effective_value": collateral.effective_value.to_string()
                }
            )
        return collateral

    def get_for_loan(self, loan_id: str) -> List[Collateral]:
        rows = self.storage.find(self.table_name, {'loan_id': loan_id})
        return [Collateral.from_dict(row) for row in rows]

    def effective_value(self, loan) -> Money:
        total = Money.zero(loan.currency)
        for collateral in self.get_for_loan(loan.id):
            total = total + collateral.effective_value
        return total

    def valuation_breakdown(self, loan) -> Dict[str, Any]:
        """Per-item appraised and effective values for a loan"""
        items = self.get_for_loan(loan.id)
        return {
            'loan_id': loan.id,
            'total_collateral_value': str(sum((c.collateral_value.amount for c in items), Decimal('0'))),
            'total_effective_value': str(self.effective_value(loan).amount),
            'items': [
                {
                    'id': c.id,
                    'collateral_type': c.collateral_type.value,
                    'collateral_value': str(c.collateral_value.amount),
                    'haircut': str(c.haircut),
                    'effective_value': str(c.effective_value.amount),
                }
                for c in items
            ]
        }
