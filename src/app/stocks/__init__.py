"""Stock watchlists, quotes cache, per-day notes and movement explanations."""
