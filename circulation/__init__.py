"""Library Circulation - Core Package

This package contains the circulation engine modules including:
- Inventory ledger for shared copy counts (ledger.py)
- Loan state machine (loans.py)
- Fine calculator (fines.py)
- Reservation queue (reservations.py)
- Lifecycle orchestrator (orchestrator.py)
- API endpoints (api.py) and operator CLI (cli.py)
"""

__version__ = "1.0.0"
