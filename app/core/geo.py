import math
from typing import Dict

EARTH_RADIUS_KM = 6371  # Earth's radius in kilometers


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two points using Haversine formula
    Angles in degrees, returns distance in meters
    """
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat/2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon/2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c * 1000


def validate_coordinates(latitude: float, longitude: float) -> Dict[str, str]:
    """
    Basic coordinate validation
    Returns a field -> message map, empty when the point is valid
    """
    errors: Dict[str, str] = {}

    if latitude is None or not (-90 <= latitude <= 90):
        errors["latitude"] = "Invalid latitude: must be between -90 and 90"

    if longitude is None or not (-180 <= longitude <= 180):
        errors["longitude"] = "Invalid longitude: must be between -180 and 180"

    return errors
