"""Read-only consumers of the crawled edge data."""

from .common_followers import CommonFollowerCount, count_common_followers, write_tsv

__all__ = ["CommonFollowerCount", "count_common_followers", "write_tsv"]
