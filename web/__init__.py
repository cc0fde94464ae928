"""web/ -- Server-rendered pages (Jinja2)."""
