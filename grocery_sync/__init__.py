"""grocery-sync: consistency core for a grocery list and pantry client."""
