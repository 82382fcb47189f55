"""
Inventory ledger (per-branch locations).

Models:
- InventoryLocation (shelf, warehouse, service bench ... inside a branch)
- StockBalance (quantity per product/variant per location, materialized from movements)
- StockMovement + StockMovementItem (append-only ledger entries that update balances)
"""
