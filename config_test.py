"""Tests for config.py."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

import config
from config import ConfigurationError


def write_config(tmp_path: Path, data) -> Path:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))
    return path


class TestVideoConfig:
    def test_defaults(self):
        video = config.validate_video_config({"source": "-i rtsp://cam"})
        assert video.max_width == 1920
        assert video.max_height == 1080
        assert video.max_fps == 30
        assert video.max_bitrate == 0
        assert video.max_streams == 2
        assert video.packet_size == 1316
        assert video.video_filter is None
        assert video.audio is False
        assert video.startup_timeout == 30.0

    def test_missing_source(self):
        with pytest.raises(ConfigurationError, match="Missing source"):
            config.validate_video_config({"max_width": 640})

    def test_blank_source(self):
        with pytest.raises(ConfigurationError):
            config.validate_video_config({"source": "   "})

    def test_camel_case_aliases(self):
        video = config.validate_video_config(
            {
                "source": "-i rtsp://cam",
                "stillImageSource": "-i http://cam/still.jpg",
                "maxWidth": 1280,
                "maxHeight": "720",
                "maxFPS": 15,
                "maxBitrate": 1000,
                "preserveRatio": "w",
                "additionalCommandline": "-g 30",
                "mapvideo": "0:v:0",
                "videoFilter": "none",
            }
        )
        assert video.still_image_source == "-i http://cam/still.jpg"
        assert (video.max_width, video.max_height, video.max_fps) == (1280, 720, 15)
        assert video.max_bitrate == 1000
        assert video.preserve_ratio == "W"
        assert video.additional_commandline == "-g 30"
        assert video.map_video == "0:v:0"
        assert video.video_filter == "none"

    def test_invalid_preserve_ratio(self):
        with pytest.raises(ConfigurationError, match="preserve_ratio"):
            config.validate_video_config({"source": "-i x", "preserve_ratio": "X"})

    def test_invalid_number(self):
        with pytest.raises(ConfigurationError, match="max_width"):
            config.validate_video_config({"source": "-i x", "max_width": "wide"})

    def test_zero_cap_rejected(self):
        with pytest.raises(ConfigurationError, match="max_fps"):
            config.validate_video_config({"source": "-i x", "max_fps": 0})

    def test_min_bitrate_above_max(self):
        with pytest.raises(ConfigurationError, match="min_bitrate"):
            config.validate_video_config({"source": "-i x", "max_bitrate": 100, "min_bitrate": 500})

    def test_unknown_keys_ignored(self, caplog):
        video = config.validate_video_config({"source": "-i x", "motion": True})
        assert video.source == "-i x"
        assert "motion" in caplog.text


class TestCameraConfig:
    def test_camera_error_names_camera(self):
        with pytest.raises(ConfigurationError, match=r"\[Garage\] Missing source"):
            config.validate_camera_config({"name": "Garage", "videoConfig": {}})

    def test_camera_requires_name(self):
        with pytest.raises(ConfigurationError, match="name"):
            config.validate_camera_config({"video_config": {"source": "-i x"}})


class TestServerConfig:
    def test_missing_file_yields_empty_config(self, tmp_path):
        server = config.load_server_config(tmp_path / "missing.json")
        assert server.cameras == []
        assert server.video_processor == "ffmpeg"
        assert server.interface_name is None

    def test_load(self, tmp_path):
        path = write_config(
            tmp_path,
            {
                "videoProcessor": "/usr/local/bin/ffmpeg",
                "interface_name": "eth0",
                "cameras": [
                    {"name": "Front", "video_config": {"source": "-i rtsp://front"}},
                    {"name": "Back", "videoConfig": {"source": "-i rtsp://back", "audio": True}},
                ],
            },
        )
        server = config.load_server_config(path)
        assert server.video_processor == "/usr/local/bin/ffmpeg"
        assert server.interface_name == "eth0"
        assert [c.name for c in server.cameras] == ["Front", "Back"]
        assert server.cameras[1].video_config.audio is True

    def test_default_path_from_module(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, {"cameras": [{"name": "Cam", "video_config": {"source": "-i x"}}]})
        monkeypatch.setattr(config, "CONFIG_FILE", path)
        assert [c.name for c in config.load_server_config().cameras] == ["Cam"]

    def test_duplicate_camera_names(self, tmp_path):
        camera = {"name": "Cam", "video_config": {"source": "-i x"}}
        path = write_config(tmp_path, {"cameras": [camera, camera]})
        with pytest.raises(ConfigurationError, match="Duplicate"):
            config.load_server_config(path)

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("not valid json")
        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            config.load_server_config(path)

    def test_non_object_json(self, tmp_path):
        path = write_config(tmp_path, [1, 2, 3])
        with pytest.raises(ConfigurationError, match="JSON object"):
            config.load_server_config(path)
