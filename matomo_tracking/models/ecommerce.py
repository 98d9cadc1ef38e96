from dataclasses import dataclass
from typing import List, Optional, Union


@dataclass
class EcommerceItem:
    """One line item of an order or cart update."""

    sku: str
    name: Optional[str] = None
    category: Optional[Union[str, List[str]]] = None
    price: float = 0.0
    quantity: int = 1

    def as_list(self) -> list:
        # positional layout expected by the collector's ec_items parameter
        category = list(self.category) if isinstance(self.category, (list, tuple)) else self.category
        return [self.sku, self.name or "", category or "", self.price, self.quantity]
