"""api/routes/ -- Versioned JSON routers."""
