# backend/escrowbook/routes/__init__.py
