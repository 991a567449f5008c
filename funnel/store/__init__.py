from .local_store import LocalStore, SeenRow

__all__ = ["LocalStore", "SeenRow"]
