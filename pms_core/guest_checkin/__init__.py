"""Online check-in access for main guests and co-travellers."""
