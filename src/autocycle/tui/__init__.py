"""Terminal dashboard for autocycle runs."""
