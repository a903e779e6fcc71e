"""Repository layer for the CRM Digiforma sync engine.

Module-level async functions taking an AsyncSession first:
- institutions / contacts: CRM entities, writes carry a WriteOrigin
- digiforma_companies: shadow companies and contacts keyed by Digiforma id
- billing: shadow quotes and invoices, per-institution revenue
- mappings: company ↔ institution mapping registry
- sync_runs: DigiformaSync lifecycle and history
- settings: singleton API settings with the encrypted token
"""
