"""Device discovery, sampling and the collection loop."""
