"""Daily market notes, weekly additional notes, and their Notion sync."""
