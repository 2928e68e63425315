"""
Tests for the extensions module.
"""

import datetime

from ooninetx import archival, extensions, trace
from ooninetx.extensions import ExtSpec
from ooninetx.model import Measurement


def test_add_to_creates_the_map():
    measurement = Measurement()
    assert measurement.extensions is None
    extensions.EXT_DNS.add_to(measurement)
    assert measurement.extensions == {"dnst": 0}


def test_last_write_wins():
    measurement = Measurement()
    ExtSpec("dnst", 0).add_to(measurement)
    ExtSpec("dnst", 1).add_to(measurement)
    assert measurement.extensions == {"dnst": 1}


def test_register_all():
    measurement = Measurement()
    for ext in extensions.ALL_EXTENSIONS:
        extensions.register(measurement, ext)
    assert measurement.extensions == {
        "dnst": 0,
        "httpt": 0,
        "netevents": 0,
        "tcpconnect": 0,
        "tlshandshake": 0,
    }


def test_measurement_start_time_anchors_the_trace():
    measurement = Measurement()
    measurement.measurement_start_time = datetime.datetime(
        2022, 4, 1, tzinfo=datetime.timezone.utc
    )
    tr = trace.Trace()
    tr.append(
        trace.Event(
            trace.CLOSE,
            measurement.measurement_start_time + datetime.timedelta(seconds=2),
        )
    )
    bundle = archival.serialize(tr, measurement.measurement_start_time)
    measurement.test_keys.update(bundle.as_dict())
    extensions.EXT_NETEVENTS.add_to(measurement)
    assert measurement.test_keys["network_events"][0]["t"] == 2.0
    assert measurement.extensions == {"netevents": 0}
