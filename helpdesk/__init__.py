"""Help-desk ticket workflow and access-control engine."""
