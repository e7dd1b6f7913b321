# backend/escrowbook/middleware/__init__.py
