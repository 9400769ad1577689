from grantscan.services.retrieval.cache import ListingCache

__all__ = ["ListingCache"]
