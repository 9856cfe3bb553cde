import base64
import io
import os
import tempfile
import unittest
from dataclasses import replace
from unittest.mock import patch

import numpy as np
from PIL import Image

from JumpMat import (Color, ConfigError, DictionaryError, SurfaceAllocationError,
                     DICTIONARY, FiducialDictionary, ARUCO_4X4, MARKER_DARK, MARKER_LIGHT,
                     LabelStyle, MatConfig, MatGenerator, MarkerSpec, PixelSpace, ReferenceMat,
                     ScaleTier, Side, Zone, ZoneRole, OutFormat,
                     cell_edges, dim_to_meters, encode_marker, marker_boxes, marker_data_url,
                     detailed_label_marks, render_mat, spec_report, tier_index, zone_ticks)

GOLD = (201, 162, 39)
MATTE = (26, 26, 26)


def pixels(img: Image.Image) -> np.ndarray:
    return np.asarray(img.convert('RGB'))


def colors_near(a: np.ndarray, y: int, x: int) -> set:
    """Colors in the pixel and its horizontal neighbors; column rounding may shift a 1px tick"""
    return {tuple(int(c) for c in px) for px in a[y, x - 1:x + 2]}


class DimensionTestCase(unittest.TestCase):
    def test_units(self):
        self.assertEqual(dim_to_meters('8mm'), 0.008)
        self.assertEqual(dim_to_meters('1.5cm'), 0.015)
        self.assertEqual(dim_to_meters('0.9m'), 0.9)
        self.assertEqual(dim_to_meters('90cm'), 0.9)
        self.assertEqual(dim_to_meters('-0.3'), -0.3)
        self.assertEqual(dim_to_meters(3), 3.0)

    def test_rejects_unknown(self):
        with self.assertRaises(ConfigError):
            dim_to_meters('5ft')
        with self.assertRaises(ConfigError):
            dim_to_meters('wide')


class ColorTestCase(unittest.TestCase):
    def test_to_pil(self):
        self.assertEqual(Color.to_pil('#c9a227'), GOLD)
        self.assertEqual(Color.to_pil('rgba(201, 162, 39, 0.3)'), (201, 162, 39, 76))
        self.assertEqual(Color.to_pil('rgba(0,0,0,0.1)'), (0, 0, 0, 26))
        self.assertEqual(Color.to_pil(Color.WHITE), (255, 255, 255))
        self.assertEqual(Color.to_pil((1, 2, 3)), (1, 2, 3))


class PixelSpaceTestCase(unittest.TestCase):
    def setUp(self):
        self.space = PixelSpace(1200, 0.3)

    def test_fenceposts(self):
        self.assertEqual(self.space.column_of(-0.3), 0)
        self.assertAlmostEqual(self.space.column_of(0), 360)
        self.assertAlmostEqual(self.space.column_of(3.0), 3960)
        self.assertAlmostEqual(self.space.to_pixels(0.08), 96)

    def test_affine(self):
        for p1, p2 in ((0, 1.4), (-0.3, 2.8), (1.73, 1.74), (2.5, -0.1)):
            self.assertAlmostEqual(self.space.column_of(p2) - self.space.column_of(p1),
                                   self.space.to_pixels(p2 - p1), places=6)

    def test_negative_lengths(self):
        self.assertAlmostEqual(self.space.to_pixels(-0.5), -600)
        self.assertAlmostEqual(self.space.column_of(-1), -840)

    def test_px_minimum(self):
        self.assertEqual(PixelSpace(100, 0.3).px(0.0012), 1)
        self.assertEqual(self.space.px(0.0012), 1)
        self.assertEqual(self.space.px(0.004), 5)

    def test_surface_size(self):
        for ppm in (100, 250, 333, 1200, 1523.5):
            space = PixelSpace.for_config(ReferenceMat, ppm)
            self.assertEqual(space.surface_size(ReferenceMat), (round(3.3 * ppm), round(0.9 * ppm)))

    def test_rejects_non_positive_density(self):
        with self.assertRaises(ConfigError):
            PixelSpace(0, 0.3)
        with self.assertRaises(ConfigError):
            PixelSpace(-5, 0.3)


class TickTierTestCase(unittest.TestCase):
    steps = (100, 50, 10, 1)

    def test_tier_index(self):
        self.assertEqual(tier_index(200, self.steps), 0)
        self.assertEqual(tier_index(250, self.steps), 1)
        self.assertEqual(tier_index(170, self.steps), 2)
        self.assertEqual(tier_index(173, self.steps), 3)
        self.assertEqual(tier_index(0, self.steps), 0)
        self.assertEqual(tier_index(-50, self.steps), 1)

    def test_first_match_wins(self):
        for cm in range(140, 281):
            expected = 0 if cm % 100 == 0 else 1 if cm % 50 == 0 else 2 if cm % 10 == 0 else 3
            self.assertEqual(tier_index(cm, self.steps), expected, cm)

    def test_landing_ticks(self):
        ticks = list(zone_ticks(ReferenceMat, ZoneRole.LANDING))
        self.assertEqual(len(ticks), 141)
        by_cm = {round(position * 100): tier.key for position, tier in ticks}
        self.assertEqual(by_cm[140], 'tenth')
        self.assertEqual(by_cm[150], 'half')
        self.assertEqual(by_cm[173], 'cm')
        self.assertEqual(by_cm[200], 'meter')
        self.assertEqual(by_cm[250], 'half')
        self.assertEqual(by_cm[280], 'tenth')
        self.assertEqual(sum(1 for key in by_cm.values() if key == 'cm'), 141 - 15)

    def test_flight_ticks_exclude_ends(self):
        ticks = list(zone_ticks(ReferenceMat, ZoneRole.FLIGHT, include_start=False, include_end=False))
        self.assertEqual([round(position * 10) for position, _ in ticks], list(range(1, 14)))
        self.assertEqual([round(position * 10) for position, tier in ticks if tier.key == 'flight_half'], [5, 10])

    def test_extended_ticks(self):
        ticks = list(zone_ticks(ReferenceMat, ZoneRole.EXTENDED, include_start=False))
        self.assertEqual([round(position * 10) for position, _ in ticks], [29, 30])
        self.assertTrue(all(tier.key == 'extended' for _, tier in ticks))

    def test_takeoff_has_no_ticks(self):
        self.assertEqual(list(zone_ticks(ReferenceMat, ZoneRole.TAKEOFF)), [])


class FiducialDictionaryTestCase(unittest.TestCase):
    def test_reference(self):
        self.assertEqual(len(DICTIONARY), 12)
        self.assertEqual(DICTIONARY.bits(0).shape, (4, 4))
        self.assertListEqual(DICTIONARY.bits(8).tolist(), [[0, 0, 0, 1], [1, 0, 1, 0], [1, 1, 1, 0], [1, 0, 0, 1]])
        DICTIONARY.check_rotations()

    def test_wraps(self):
        np.testing.assert_array_equal(DICTIONARY.bits(12), DICTIONARY.bits(0))
        np.testing.assert_array_equal(DICTIONARY.bits(-1), DICTIONARY.bits(11))

    def test_rotated_duplicate(self):
        rotated = tuple(map(tuple, np.rot90(np.array(ARUCO_4X4[3])).tolist()))
        confusable = FiducialDictionary(ARUCO_4X4[:2] + (rotated,) + ARUCO_4X4[3:], 'Confusable')
        with self.assertRaises(DictionaryError):
            confusable.check_rotations()
        confusable.check_rotations([0, 1, 4, 5])
        with self.assertRaises(DictionaryError):
            confusable.check_rotations([2, 3])

    def test_malformed(self):
        with self.assertRaises(DictionaryError):
            FiducialDictionary([((0, 1, 0), (1, 0, 1), (0, 1, 0))], 'Small')
        with self.assertRaises(DictionaryError):
            FiducialDictionary([((0, 1, 0, 2),) * 4], 'Ternary')
        with self.assertRaises(DictionaryError):
            FiducialDictionary([], 'Empty')


class EncodeMarkerTestCase(unittest.TestCase):
    def test_geometry(self):
        core, quiet = 96, 18
        patch_img = encode_marker(8, core, quiet)
        self.assertEqual(patch_img.mode, 'L')
        self.assertEqual(patch_img.size, (core + 2 * quiet, core + 2 * quiet))
        a = np.asarray(patch_img)
        self.assertTrue((a[:quiet, :] == MARKER_LIGHT).all())
        self.assertTrue((a[-quiet:, :] == MARKER_LIGHT).all())
        self.assertTrue((a[:, :quiet] == MARKER_LIGHT).all())
        cell = core // 6
        ring = a[quiet:quiet + cell, quiet:quiet + core]
        self.assertTrue((ring == MARKER_DARK).all())
        bits = DICTIONARY.bits(8)
        for row in range(4):
            for col in range(4):
                y = quiet + (row + 1) * cell + cell // 2
                x = quiet + (col + 1) * cell + cell // 2
                self.assertEqual(a[y, x], MARKER_DARK if bits[row, col] else MARKER_LIGHT, (row, col))

    def test_no_quiet_zone(self):
        a = np.asarray(encode_marker(0, 60))
        self.assertEqual(a.shape, (60, 60))
        self.assertTrue((a[0, :] == MARKER_DARK).all())
        self.assertTrue((a[:, -1] == MARKER_DARK).all())

    def test_uneven_core(self):
        self.assertEqual(cell_edges(100), [0, 17, 33, 50, 67, 83, 100])
        self.assertEqual(encode_marker(5, 100, 3).size, (106, 106))

    def test_wrap_around(self):
        for marker_id in range(12):
            np.testing.assert_array_equal(np.asarray(encode_marker(marker_id, 48, 4)),
                                          np.asarray(encode_marker(marker_id + 12, 48, 4)))
        np.testing.assert_array_equal(np.asarray(encode_marker(-1, 48)), np.asarray(encode_marker(11, 48)))

    def test_distinct_patterns(self):
        seen = {encode_marker(i, 36).tobytes() for i in range(12)}
        self.assertEqual(len(seen), 12)

    def test_too_small(self):
        with self.assertRaises(ValueError):
            encode_marker(0, 0)

    def test_data_url(self):
        url = marker_data_url(3)
        self.assertTrue(url.startswith('data:image/png;base64,'))
        img = Image.open(io.BytesIO(base64.b64decode(url.split(',', 1)[1])))
        self.assertEqual(img.size, (160, 160))


class MatConfigTestCase(unittest.TestCase):
    def test_reference_valid(self):
        self.assertIs(ReferenceMat.validate(), ReferenceMat)
        self.assertAlmostEqual(ReferenceMat.leading_offset, 0.3)
        self.assertEqual(ReferenceMat.zone(ZoneRole.LANDING).start, 1.4)
        self.assertEqual([t.key for t in ReferenceMat.tiers_for(ZoneRole.LANDING)], ['meter', 'half', 'tenth', 'cm'])

    def test_placements(self):
        placements = ReferenceMat.markers.placements()
        self.assertEqual(len(placements), 8)
        self.assertEqual({p.marker_id for p in placements if p.side == Side.LEFT}, {8, 9, 10, 11})
        self.assertEqual({p.marker_id for p in placements if p.side == Side.RIGHT}, {0, 1, 2, 3})
        self.assertEqual([p.label for p in placements[:4]], ['0m', '1m', '1.8m', '2.4m'])

    def test_zone_gap(self):
        zones = (Zone(ZoneRole.TAKEOFF, -0.3, 0.0),
                 Zone(ZoneRole.FLIGHT, 0.0, 1.3),
                 Zone(ZoneRole.LANDING, 1.4, 2.8),
                 Zone(ZoneRole.EXTENDED, 2.8, 3.0))
        with self.assertRaises(ConfigError):
            replace(ReferenceMat, zones=zones).validate()

    def test_zone_reversed(self):
        zones = (Zone(ZoneRole.TAKEOFF, -0.3, 0.0),
                 Zone(ZoneRole.FLIGHT, 0.0, 1.4),
                 Zone(ZoneRole.LANDING, 1.4, 1.4),
                 Zone(ZoneRole.EXTENDED, 1.4, 3.0))
        with self.assertRaises(ConfigError):
            replace(ReferenceMat, zones=zones).validate()

    def test_zones_short_of_length(self):
        with self.assertRaises(ConfigError):
            replace(ReferenceMat, total_length=3.2).validate()

    def test_tier_not_positive(self):
        tiers = ReferenceMat.tiers + (ScaleTier('bad', ZoneRole.EXTENDED, 0.0, 0.1, 0.001),)
        with self.assertRaises(ConfigError):
            replace(ReferenceMat, tiers=tiers).validate()

    def test_tier_not_hierarchical(self):
        tiers = tuple(replace(t, spacing=0.25) if t.key == 'half' else t for t in ReferenceMat.tiers)
        with self.assertRaises(ConfigError):
            replace(ReferenceMat, tiers=tiers).validate()

    def test_marker_ids_wrap_to_duplicates(self):
        markers = replace(ReferenceMat.markers, left_id_base=12)
        with self.assertRaises(ConfigError):
            replace(ReferenceMat, markers=markers).validate()

    def test_markers_overlap(self):
        markers = replace(ReferenceMat.markers, positions=(0.0, 0.05, 1.8, 2.4))
        with self.assertRaises(ConfigError):
            replace(ReferenceMat, markers=markers).validate()

    def test_markers_past_end(self):
        markers = replace(ReferenceMat.markers, positions=(0.0, 1.0, 1.8, 2.98))
        with self.assertRaises(ConfigError):
            replace(ReferenceMat, markers=markers).validate()

    def test_markers_too_wide(self):
        with self.assertRaises(ConfigError):
            replace(ReferenceMat, total_width=0.2).validate()

    def test_from_dict_unknown_key(self):
        with self.assertRaises(ConfigError):
            MatConfig.from_dict({'name': 'Odd', 'colour': 'red'})


class TomlTestCase(unittest.TestCase):
    def test_example_names(self):
        self.assertIn('Reference', list(MatConfig.example_names()))
        self.assertIn('Youth', list(MatConfig.example_names()))

    def test_reference_file_matches_builtin(self):
        self.assertEqual(MatConfig.from_example('Reference'), ReferenceMat)

    def test_load(self):
        self.assertIs(MatConfig.load('Reference'), ReferenceMat)
        youth = MatConfig.load('Youth')
        self.assertEqual(youth.name, 'Youth')
        self.assertEqual(youth.label_style, LabelStyle.DETAILED)
        self.assertEqual(youth.markers, replace(MarkerSpec(), positions=(0.0, 0.8, 1.6, 2.2)))
        youth.validate()

    def test_load_path(self):
        path = os.path.join(MatConfig.example_dir_path, 'Mat-Youth.toml')
        self.assertEqual(MatConfig.load(path), MatConfig.from_example('Youth'))


class RenderTestCase(unittest.TestCase):
    ppm = 200

    def setUp(self):
        self.generator = MatGenerator(ReferenceMat, self.ppm, speckle=False)

    def test_dimensions(self):
        for ppm in (100, 250, 333):
            img = render_mat(ReferenceMat, PixelSpace.for_config(ReferenceMat, ppm), speckle=False)
            self.assertEqual(img.size, (round(3.3 * ppm), round(0.9 * ppm)))
            self.assertEqual(img.mode, 'RGB')

    def test_reference_scenario(self):
        generator = MatGenerator(speckle=False)
        self.assertEqual(generator.size, (3960, 1080))
        self.assertEqual(generator.surface.size, (3960, 1080))
        self.assertEqual(len(generator.placements()), 8)

    def test_deterministic_without_speckle(self):
        first = self.generator.encode()
        self.generator.generate()
        self.assertEqual(self.generator.encode(), first)
        self.assertEqual(MatGenerator(ReferenceMat, self.ppm, speckle=False).encode(), first)

    def test_deterministic_with_seed(self):
        a = MatGenerator(ReferenceMat, self.ppm, seed=7).encode()
        b = MatGenerator(ReferenceMat, self.ppm, seed=7).encode()
        self.assertEqual(a, b)

    def test_origin_line(self):
        a = pixels(self.generator.surface)
        x = round(self.generator.space.column_of(0))
        self.assertIn(GOLD, colors_near(a, a.shape[0] // 2, x))
        self.assertIn(GOLD, colors_near(a, a.shape[0] // 4, x))

    def test_precision_tick(self):
        a = pixels(self.generator.surface)
        x = round(self.generator.space.column_of(2.0))
        self.assertIn(GOLD, colors_near(a, a.shape[0] // 2, x))

    def test_takeoff_zone_is_bare(self):
        a = pixels(self.generator.surface)
        x = round(self.generator.space.column_of(-0.2))
        self.assertEqual(tuple(a[a.shape[0] // 2, x]), MATTE)

    def test_border(self):
        a = pixels(self.generator.surface)
        h, w, _ = a.shape
        for y, x in ((0, 0), (h - 1, w - 1), (h // 2, 0), (0, w // 2)):
            self.assertEqual(tuple(a[y, x]), GOLD)

    def test_marker_footprints_match_encoder(self):
        surface = self.generator.surface
        for box in self.generator.marker_boxes():
            expected = encode_marker(box.placement.marker_id, box.core_px, box.quiet_px)
            np.testing.assert_array_equal(pixels(surface.crop(box.bounds)), pixels(expected))

    def test_marker_footprints_do_not_overlap(self):
        for ppm in (100, 200, 1200):
            space = PixelSpace.for_config(ReferenceMat, ppm)
            w, h = space.surface_size(ReferenceMat)
            boxes = marker_boxes(ReferenceMat, space)
            for side in Side:
                row = sorted((b for b in boxes if b.placement.side == side), key=lambda b: b.x0)
                for left, right in zip(row, row[1:]):
                    self.assertLessEqual(left.bounds[2], right.x0)
            for box in boxes:
                x0, y0, x1, y1 = box.bounds
                self.assertTrue(0 <= x0 and x1 <= w and 0 <= y0 and y1 <= h)

    def test_reference_marker_boxes(self):
        boxes = MatGenerator().marker_boxes()
        first = boxes[0]
        self.assertEqual((first.core_px, first.quiet_px, first.side_px), (96, 18, 132))
        self.assertEqual((first.x0, first.y0), (294, 24))
        self.assertEqual(boxes[4].y0, 1080 - 132 - 24)

    def test_detailed_label_marks(self):
        title_mm, sparse_mms, dense_mms = detailed_label_marks(ReferenceMat)
        self.assertEqual(title_mm, 1200)
        self.assertEqual(sparse_mms, [200, 400, 600, 800, 1000])
        self.assertEqual(dense_mms, list(range(1200, 3001, 100)))

    def test_label_styles_differ(self):
        detailed = MatGenerator(replace(ReferenceMat, label_style=LabelStyle.DETAILED), self.ppm, speckle=False)
        self.assertNotEqual(detailed.encode(), self.generator.encode())

    def test_youth_renders(self):
        generator = MatGenerator(MatConfig.load('Youth'), self.ppm, speckle=False)
        self.assertEqual(generator.surface.size, (round(2.8 * self.ppm), round(0.8 * self.ppm)))

    def test_invalid_config_before_drawing(self):
        with patch('JumpMat.new_surface') as mock_surface:
            with self.assertRaises(ConfigError):
                MatGenerator(replace(ReferenceMat, total_length=3.2))
            with self.assertRaises(ConfigError):
                render_mat(replace(ReferenceMat, total_width=-1))
            mock_surface.assert_not_called()

    def test_surface_too_large(self):
        with self.assertRaises(SurfaceAllocationError):
            MatGenerator(ReferenceMat, 1e6).generate()

    def test_zero_density(self):
        with self.assertRaises(ConfigError):
            MatGenerator(ReferenceMat, 0)
        with self.assertRaises(ConfigError):
            MatGenerator(ReferenceMat, -200)

    def test_density_too_low_for_markers(self):
        with patch('JumpMat.new_surface') as mock_surface:
            with self.assertRaises(ConfigError):
                MatGenerator(ReferenceMat, 5, speckle=False).generate()
            with self.assertRaises(ConfigError):
                MatGenerator(ReferenceMat, 60, speckle=False).generate()
            mock_surface.assert_not_called()
        self.assertEqual(MatGenerator(ReferenceMat, 80, speckle=False).surface.size, (264, 72))


class ExportTestCase(unittest.TestCase):
    def setUp(self):
        self.generator = MatGenerator(ReferenceMat, 150, speckle=False)

    def test_lazy_surface(self):
        self.assertIsNone(self.generator._surface)
        self.generator.encode()
        self.assertIsNotNone(self.generator._surface)
        self.assertIs(self.generator.surface, self.generator.surface)

    def test_encode(self):
        self.assertTrue(self.generator.encode().startswith(b'\x89PNG'))
        self.assertTrue(self.generator.encode('jpeg', 0.8).startswith(b'\xff\xd8'))
        self.assertTrue(self.generator.encode('image/jpeg').startswith(b'\xff\xd8'))
        with self.assertRaises(ValueError):
            self.generator.encode('gif')

    def test_out_format(self):
        self.assertEqual(OutFormat.of('JPG'), OutFormat.JPEG)
        self.assertEqual(OutFormat.of('.png'), OutFormat.PNG)
        self.assertEqual(OutFormat.JPEG.mime, 'image/jpeg')

    def test_data_url(self):
        url = self.generator.data_url()
        self.assertTrue(url.startswith('data:image/png;base64,'))
        self.assertEqual(base64.b64decode(url.split(',', 1)[1]), self.generator.encode())
        self.assertTrue(self.generator.data_url('image/jpeg', 0.5).startswith('data:image/jpeg;base64,'))

    def test_save_image(self):
        with tempfile.TemporaryDirectory() as tmp_dir, patch('builtins.print'):
            path = self.generator.save_image(os.path.join(tmp_dir, 'jump-mat.png'))
            with Image.open(path) as img:
                self.assertEqual(img.size, self.generator.size)

    def test_textured_mesh(self):
        rendered = self.generator.to_textured_mesh()
        mesh = rendered.mesh
        np.testing.assert_allclose(mesh.bounds, [[-0.3, 0, -0.45], [3.0, 0, 0.45]])
        np.testing.assert_allclose(mesh.extents, [3.3, 0, 0.9])
        np.testing.assert_allclose(mesh.face_normals, [[0, 1, 0], [0, 1, 0]], atol=1e-12)
        self.assertEqual(mesh.visual.uv.shape, (4, 2))
        self.assertEqual(rendered.texture.size, self.generator.size)
        self.assertIsNot(rendered.texture, self.generator.surface)
        self.assertAlmostEqual(mesh.visual.material.roughnessFactor, 0.92)

    def test_generate_drops_stale_mesh(self):
        generator = MatGenerator(ReferenceMat, 150)
        old = generator.mesh
        generator.generate()
        self.assertTrue(old.released)
        self.assertEqual(generator.mesh.texture.tobytes(), generator.surface.tobytes())

    def test_regenerate_releases(self):
        old = self.generator.mesh
        old_surface = self.generator.surface
        new = self.generator.regenerate()
        self.assertTrue(old.released)
        self.assertIsNone(old.texture)
        self.assertFalse(new.released)
        self.assertIs(self.generator.mesh, new)
        self.assertIsNot(self.generator.surface, old_surface)

    def test_export_glb(self):
        with tempfile.TemporaryDirectory() as tmp_dir, patch('builtins.print'):
            path = os.path.join(tmp_dir, 'mat.glb')
            self.generator.mesh.export(path)
            with open(path, 'rb') as f:
                self.assertEqual(f.read(4), b'glTF')


class SpecReportTestCase(unittest.TestCase):
    def test_deterministic(self):
        self.assertEqual(spec_report(ReferenceMat), spec_report(MatConfig.from_example('Reference')))
        self.assertNotIn('Generated:', spec_report(ReferenceMat))

    def test_contents(self):
        report = spec_report(ReferenceMat, generated_at='2024-01-01 00:00:00')
        self.assertIn('Total length: 3.3m (including 30cm takeoff zone)', report)
        self.assertIn('3960 x 1080 px', report)
        self.assertIn('Core size: 8cm x 8cm', report)
        self.assertIn('Total footprint: 11cm x 11cm', report)
        self.assertIn('IDs: left 8, 9, 10, 11; right 0, 1, 2, 3', report)
        self.assertIn('Count: 8', report)
        self.assertIn('Marker accuracy: +/-0.5mm', report)
        self.assertTrue(report.rstrip().endswith('Generated: 2024-01-01 00:00:00'))


if __name__ == '__main__':
    unittest.main()
