import math

import pytest

from memorial_feed.errors import ValidationError
from memorial_feed.feed import geo


def test_bucket_formats_fixed_precision():
    assert geo.bucket(40.712776, -74.005974) == "40.71,-74.01"
    assert geo.bucket(40.712776, -74.005974, precision=1) == "40.7,-74.0"


def test_bucket_is_reflexive_and_bins_nearby_points():
    assert geo.bucket(51.5007, -0.1246) == geo.bucket(51.5007, -0.1246)
    assert geo.bucket(51.5011, -0.1249) == geo.bucket(51.4991, -0.1201)


def test_bucket_distinguishes_points_in_different_bins():
    assert geo.bucket(51.50, -0.12) != geo.bucket(51.52, -0.12)


def test_negative_zero_shares_the_zero_bin():
    assert geo.bucket(-0.001, 0.001) == geo.bucket(0.001, -0.001) == "0.00,0.00"


@pytest.mark.parametrize(
    "lat,lng",
    [(math.nan, 1.0), (1.0, math.inf), (-math.inf, 0.0), (None, 1.0), ("north", 2.0)],
)
def test_bucket_rejects_non_finite_input(lat, lng):
    assert geo.bucket(lat, lng) is None


def test_validate_coordinates():
    geo.validate_coordinates(None, None)
    geo.validate_coordinates(-33.86, 151.2)
    with pytest.raises(ValidationError):
        geo.validate_coordinates(10.0, None)
    with pytest.raises(ValidationError):
        geo.validate_coordinates(91.0, 0.0)
    with pytest.raises(ValidationError):
        geo.validate_coordinates(0.0, math.nan)
