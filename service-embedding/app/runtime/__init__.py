"""Runtime helpers: device resolution and the metrics facade."""
