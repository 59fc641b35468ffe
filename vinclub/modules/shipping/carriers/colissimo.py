"""
Colissimo carrier

REST API: POST /labels, GET /tracking/{tn}, POST /rates.
Label payload names the origin "sender".
"""
from vinclub.models.shipment import TrackingStatus
from vinclub.modules.shipping.carriers.base import RestCarrier

COLISSIMO_STATUS_MAP = {
    "PRIS_EN_CHARGE": TrackingStatus.IN_TRANSIT,
    "EN_COURS": TrackingStatus.IN_TRANSIT,
    "EN_LIVRAISON": TrackingStatus.OUT_FOR_DELIVERY,
    "LIVRE": TrackingStatus.DELIVERED,
    "DELIVERED": TrackingStatus.DELIVERED,
    "ANOMALIE": TrackingStatus.EXCEPTION,
    "RETOUR_EXPEDITEUR": TrackingStatus.RETURNED,
    "ANNONCE": TrackingStatus.LABEL_CREATED,
}


class ColissimoCarrier(RestCarrier):
    label_path = "/labels"
    tracking_path = "/tracking/{tracking_number}"
    rates_path = "/rates"
    shipper_key = "sender"
    status_map = COLISSIMO_STATUS_MAP

    @property
    def carrier_code(self) -> str:
        return "colissimo"

    @property
    def carrier_name(self) -> str:
        return "Colissimo"
