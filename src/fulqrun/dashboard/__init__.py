"""Dashboard module -- widget layouts per user and widget data loading."""
