"""Core types shared by gateway, adapters and consumers."""
