"""Authentication and admission control for runplane endpoints."""
