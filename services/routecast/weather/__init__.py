"""Weather aggregation: provider adapters, caching, consensus, route batching."""
