"""Client (tenant) registry: key validation and admin CRUD."""
