"""Fixed advice lines for a farm zone, keyed on its stored metrics."""
from agrivision.schemas import ZoneMetrics

SPARSE_NDVI = 0.3

IRRIGATION_ADVICE = {
    "insufficient": "Irrigation needed soon.",
    "excessive": "Reduce watering to avoid waterlogging.",
}
IRRIGATION_OK = "Irrigation is adequate."

STRESS_ADVICE = {
    "high": "Crop is under high stress. Check for pests, disease, or water stress.",
    "medium": "Moderate stress detected. Monitor regularly.",
}
STRESS_OK = "Crop is healthy."

NDVI_SPARSE = "Vegetation is sparse. Consider fertilization or irrigation."
NDVI_OK = "Vegetation looks good."


def zone_advice(zone: ZoneMetrics) -> list[str]:
    return [
        IRRIGATION_ADVICE.get(zone.irrigation_status, IRRIGATION_OK),
        STRESS_ADVICE.get(zone.stress_level, STRESS_OK),
        NDVI_SPARSE if zone.ndvi < SPARSE_NDVI else NDVI_OK,
    ]
