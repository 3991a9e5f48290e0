"""
Token Wallet Module
Token-based metering for AI generation with purchase reconciliation

This module provides:
- Daily free allotment + purchased token balance per user
- Unlimited-plan bypass
- Concurrency-safe atomic consumption (versioned compare-and-set)
- Purchase confirmation state machine shared by client callback and gateway webhook
- Append-only purchase history with receipt numbers

Collections used:
- user_tokens: Per-user token ledger (daily usage + purchased balance)
- token_transactions: Immutable transaction log
- pending_token_purchases: Purchase lifecycle records
- purchase_history: One row per completed purchase
- receipt_counters: Monthly receipt sequence
"""

__version__ = "1.0.0"
