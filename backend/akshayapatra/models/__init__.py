from akshayapatra.models.local_entry import LocalEntry

__all__ = ["LocalEntry"]
