"""Mutation layer: write-through, coalescing and deferred writes."""
