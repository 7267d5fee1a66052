"""Spread Prometheus scrape targets over shards: discovery, exploring, rebalancing and a coordinator API."""

__version__ = "0.1.0"