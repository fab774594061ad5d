"""
Shopping Assistant Package

Rule evaluation and discount composition engine for an e-commerce shopping
assistant. Evaluates carts through Rules → Discounts → Suggestions with a
session state machine guarding every cart mutation.
"""

__version__ = "2.0.0"
