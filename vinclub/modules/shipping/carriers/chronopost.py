"""
Chronopost carrier

REST API: POST /shipping/labels, GET /tracking/{tn}, POST /shipping/rates.
Label payload names the origin "shipper".
"""
from vinclub.models.shipment import TrackingStatus
from vinclub.modules.shipping.carriers.base import RestCarrier

CHRONOPOST_STATUS_MAP = {
    "LABEL_CREATED": TrackingStatus.LABEL_CREATED,
    "PRE_ADVICE": TrackingStatus.LABEL_CREATED,
    "PICKED_UP": TrackingStatus.IN_TRANSIT,
    "IN_TRANSIT": TrackingStatus.IN_TRANSIT,
    "OUT_FOR_DELIVERY": TrackingStatus.OUT_FOR_DELIVERY,
    "DELIVERED": TrackingStatus.DELIVERED,
    "DELIVERY_FAILED": TrackingStatus.EXCEPTION,
    "INCIDENT": TrackingStatus.EXCEPTION,
    "RETURNED": TrackingStatus.RETURNED,
    "RETURN_TO_SENDER": TrackingStatus.RETURNED,
}


class ChronopostCarrier(RestCarrier):
    label_path = "/shipping/labels"
    tracking_path = "/tracking/{tracking_number}"
    rates_path = "/shipping/rates"
    shipper_key = "shipper"
    status_map = CHRONOPOST_STATUS_MAP

    @property
    def carrier_code(self) -> str:
        return "chronopost"

    @property
    def carrier_name(self) -> str:
        return "Chronopost"
