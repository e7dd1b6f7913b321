# backend/escrowbook/api/__init__.py
