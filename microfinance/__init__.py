"""
Microfinance Lending Engine

Loan amortization, repayment allocation, arrears classification,
provisioning and portfolio reporting for regulated microfinance lenders.
All monetary values use Decimal precision.
"""

__version__ = "1.0.0"
