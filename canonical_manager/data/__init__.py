"""
In-memory indexing of installed FHIR packages.

This package is responsible for:
* Holding the canonical URL index and the package table.
* Validating pre-built `.index.json` files.
* Crawling an installed package tree into the index.
"""
