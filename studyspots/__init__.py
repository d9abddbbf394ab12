"""Study spot search over Google Maps Places."""
