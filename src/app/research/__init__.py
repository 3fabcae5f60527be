"""Research module -- tracked sources, their article timelines, and AI summaries.

Sources are RSS feeds, crawled pages, or manual lists. The sync service
pulls new items, the summary client relays the external summary function's
stream and keeps a history of finished summaries.
"""
