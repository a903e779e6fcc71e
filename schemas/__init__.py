from .digiforma import (
    PLACEHOLDER,
    AddressPayload,
    CompanyMetadata,
    CompanyPayload,
    ContactPayload,
    InvoicePayload,
    LineItem,
    QuotePayload,
    TraineePayload,
    is_placeholder,
)

__all__ = [
    "PLACEHOLDER", "is_placeholder",
    "AddressPayload", "CompanyMetadata", "CompanyPayload", "ContactPayload",
    "TraineePayload", "LineItem", "QuotePayload", "InvoicePayload",
]
