"""
Tests for image reading, writing and decoding.
"""

import numpy as np
import pytest
from PIL import Image

from .errors import MalformedImageError
from .image_io import decode_for_stitching, image_from_buffer, read_image, resize_image, \
    write_image


def test_rgba_round_trip(tmp_path):
    image = np.zeros((20, 30, 4), dtype=np.uint8)
    image[..., 0] = 200
    image[5:, :, 3] = 255
    path = str(tmp_path / 'image.png')

    write_image(path, image)

    np.testing.assert_array_equal(read_image(path), image)


def test_write_rejects_two_channels(tmp_path):
    with pytest.raises(ValueError):
        write_image(str(tmp_path / 'bad.png'), np.zeros((4, 4, 2), dtype=np.uint8))


def test_decode_subsamples_by_power_of_two(tmp_path):
    path = str(tmp_path / 'large.png')
    Image.new('RGB', (100, 60), (10, 20, 30)).save(path)

    image, sample, rotation = decode_for_stitching(path, max_dimension=30)

    assert sample == 4
    assert rotation == 0.0
    assert image.shape == (15, 25, 4)
    assert np.all(image[..., 3] == 255)


def test_decode_applies_exif_rotation(tmp_path):
    path = str(tmp_path / 'portrait.jpg')
    exif = Image.Exif()
    exif[0x0112] = 6
    Image.new('RGB', (40, 20), (120, 60, 30)).save(path, exif=exif)

    image, sample, rotation = decode_for_stitching(path, max_dimension=100)

    assert sample == 1
    assert rotation == 90.0
    assert image.shape == (40, 20, 4)


def test_decode_missing_file_is_io_error(tmp_path):
    with pytest.raises(IOError):
        decode_for_stitching(str(tmp_path / 'missing.jpg'))


def test_buffer_is_viewed_not_copied():
    buffer = bytearray(range(24))

    view = image_from_buffer(buffer, width=2, height=3, channels=4)

    assert view.shape == (3, 2, 4)
    assert view[2, 1, 3] == 23
    assert not view.flags.writeable
    with pytest.raises(MalformedImageError):
        image_from_buffer(buffer, width=3, height=3, channels=4)


def test_resize_to_exact_size():
    image = np.zeros((40, 60, 3), dtype=np.uint8)

    assert resize_image(image, scale=0.5).shape == (20, 30, 3)
    assert resize_image(image, width=17, height=9).shape == (9, 17, 3)
