"""
Finance Engine - Source Package

Keeps accounts, transactions, budgets, debts and goal-driven postings
mutually consistent under arbitrary interleaved edits.

DESIGN PRINCIPLES:
1. The transaction log is the source of truth
2. Fail early, fail visibly, leave state unchanged
3. No silent corrections
4. Every commit must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Personal Finance Team"
