"""Data-source adapters implementing the kernel Gateway contract."""
