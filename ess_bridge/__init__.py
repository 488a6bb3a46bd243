"""
ESS Bridge

Loan integration middleware between the employee self-service portal and
a core-banking ledger: signed protocol gateway, loan application saga and
affordability calculator.
"""

__version__ = "1.0.0"
