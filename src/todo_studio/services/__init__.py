"""Application services that sit between the HTTP surface and the store."""
