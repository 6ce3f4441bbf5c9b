from .rides import make_ride_router


# Trips: same lifecycle as rides, priced on great-circle distance only
router = make_ride_router("trip")
