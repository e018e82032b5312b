# Services layer for carrier and order logic
