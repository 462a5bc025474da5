"""Field descriptor feed: module metadata, accessors and value coercion."""
