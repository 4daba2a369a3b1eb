from datetime import datetime, timezone

from daylight.domain.models import EventBatch, EventData, Light

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_light(light_id="L1", schedule="Office", **kw) -> Light:
    defaults = dict(
        light_service_id=light_id,
        zigbee_service_id=f"zb-{light_id}",
        name=f"Light {light_id}",
        schedule_name=schedule,
        group_name="Office",
        min_color_temp_mirek=153,
        max_color_temp_mirek=454,
    )
    defaults.update(kw)
    return Light(**defaults)


def light_event(at, light_id="L1", **fields) -> EventBatch:
    return EventBatch(creation_time=at, type="update", data=(EventData(id=light_id, type="light", **fields),))


def zigbee_event(at, zigbee_id, status) -> EventBatch:
    return EventBatch(
        creation_time=at,
        type="update",
        data=(EventData(id=zigbee_id, type="zigbee_connectivity", status=status),),
    )
