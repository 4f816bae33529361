"""Tests for the command line interface."""
import json
import tempfile
from pathlib import Path

import numpy as np
from PIL import Image

from pbnkit.cli import create_parser, main


def _write_image(directory: Path) -> Path:
    img = np.zeros((48, 48, 3), dtype=np.uint8)
    img[:, :24] = [200, 40, 40]
    img[:, 24:] = [40, 40, 200]
    path = directory / "photo.png"
    Image.fromarray(img).save(path)
    return path


class TestParser:
    def test_defaults(self):
        args = create_parser().parse_args(['in.png'])
        assert args.colors == 16
        assert args.min_region == 50
        assert args.smoothness == 2
        assert args.artistic is False
        assert args.worker is False


class TestMain:
    """Test end-to-end CLI runs."""

    def test_writes_outputs(self, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            input_path = _write_image(tmp)
            output_dir = tmp / "out"

            code = main([str(input_path), '-o', str(output_dir), '--colors', '2', '--min-region', '10'])

            assert code == 0
            for name in ('colorized.png', 'contours.png', 'numbered.png', 'preview.png', 'template.svg'):
                assert (output_dir / name).exists()
            project = json.loads((output_dir / 'project.json').read_text())
            assert project['width'] == 48
            assert len(project['zones']) == 2

        out = capsys.readouterr().out
        assert 'Zones: 2' in out
        assert '100.0%' in out

    def test_default_output_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            input_path = _write_image(Path(tmpdir))

            code = main([str(input_path), '--colors', '2', '--smoothness', '0', '--artistic'])

            assert code == 0
            assert (Path(tmpdir) / 'photo_pbn' / 'template.svg').exists()

    def test_effect_and_svg_options(self, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            input_path = _write_image(tmp)
            output_dir = tmp / "out"

            code = main([
                str(input_path), '-o', str(output_dir), '--colors', '2', '--min-region', '10',
                '--effect', 'oil', '--effect-intensity', '40', '--svg-group', '--svg-metadata'
            ])

            assert code == 0
            svg = (output_dir / 'template.svg').read_text()
            assert '<g id="color-' in svg
            assert '<metadata>' in svg

        assert 'Preview effect: oil at 40' in capsys.readouterr().out

    def test_invalid_effect_intensity(self, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            input_path = _write_image(Path(tmpdir))

            code = main([str(input_path), '--effect', 'pencil', '--effect-intensity', '150'])

        assert code == 1
        assert 'intensity' in capsys.readouterr().err

    def test_missing_input(self, capsys):
        code = main(['/nonexistent/photo.png'])

        assert code == 1
        assert 'not found' in capsys.readouterr().err

    def test_invalid_parameters(self, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            input_path = _write_image(Path(tmpdir))

            code = main([str(input_path), '--colors', '0'])

        assert code == 1
        assert 'Error:' in capsys.readouterr().err
