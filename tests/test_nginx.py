"""Tests for the nginx HTTPS rewrite."""

from pathlib import Path

import pytest

from server_provisioner.exceptions import ConfigRewriteError
from server_provisioner.nginx import NginxConfig, enable_https

from conftest import NGINX_TEMPLATE


def test_template_is_balanced():
    assert NginxConfig(NGINX_TEMPLATE).is_balanced()


def test_unbalanced_detected():
    assert not NginxConfig("http {\n  server {\n}\n").is_balanced()
    assert not NginxConfig("}\n{\n").is_balanced()


def test_braces_in_comments_ignored():
    assert NginxConfig("http {\n    # location / {\n}\n").is_balanced()


def test_enable_https_redirect():
    config = NginxConfig(NGINX_TEMPLATE)
    assert config.enable_https_redirect() == 1
    assert "        return 301 https://$host$request_uri;" in config.lines


def test_disable_http_fallback_comments_whole_block():
    config = NginxConfig(NGINX_TEMPLATE)
    assert config.disable_http_fallback() == 4
    text = config.render()
    assert "        # location / {" in text
    assert "            # proxy_pass http://app;" in text
    assert "        # }" in text
    assert config.is_balanced()


def test_disable_http_fallback_without_marker():
    assert NginxConfig("server {\n    listen 80;\n}\n").disable_http_fallback() == 0


def test_enable_https_server():
    config = NginxConfig(NGINX_TEMPLATE)
    assert config.enable_https_server() == 1
    text = config.render()
    assert "    server {\n        listen 443 ssl http2;" in text
    assert "        ssl_certificate /etc/nginx/ssl/cert.pem;" in text
    assert config.is_balanced()


def test_commented_http_server_left_alone():
    text = "http {\n    # server {\n    #     listen 8080;\n    # }\n}\n"
    config = NginxConfig(text)
    assert config.enable_https_server() == 0
    assert config.render() == text


def test_set_server_names():
    config = NginxConfig("server {\n    server_name yourdomain.com www.yourdomain.com;\n}\n")
    assert config.set_server_names(["example.com"]) == 1
    assert config.lines[1] == "    server_name example.com;"


def test_real_server_name_not_replaced():
    config = NginxConfig("server {\n    server_name other.org;\n}\n")
    assert config.set_server_names(["example.com"]) == 0


def test_enable_https_rewrites_file(tmp_path: Path, file_manager):
    conf = tmp_path / "nginx.conf"
    conf.write_text(NGINX_TEMPLATE)

    changes = enable_https(conf, "example.com", True, file_manager)

    assert len(changes) == 4
    text = conf.read_text()
    assert "        return 301 https://$host$request_uri;" in text
    assert text.count("server_name example.com www.example.com;") == 2
    assert "yourdomain.com" not in text
    assert NginxConfig(text).is_balanced()
    assert (tmp_path / "nginx.conf.backup").read_text() == NGINX_TEMPLATE


def test_enable_https_without_www(tmp_path: Path, file_manager):
    conf = tmp_path / "nginx.conf"
    conf.write_text(NGINX_TEMPLATE)
    enable_https(conf, "example.com", False, file_manager)
    assert "server_name example.com;" in conf.read_text()


def test_enable_https_is_idempotent(tmp_path: Path, file_manager):
    conf = tmp_path / "nginx.conf"
    conf.write_text(NGINX_TEMPLATE)
    enable_https(conf, "example.com", True, file_manager)
    once = conf.read_text()

    assert enable_https(conf, "example.com", True, file_manager) == []
    assert conf.read_text() == once


def test_enable_https_missing_file(tmp_path: Path, file_manager):
    with pytest.raises(ConfigRewriteError):
        enable_https(tmp_path / "nginx.conf", "example.com", False, file_manager)


def test_enable_https_refuses_unbalanced_input(tmp_path: Path, file_manager):
    conf = tmp_path / "nginx.conf"
    conf.write_text("http {\n    server {\n")
    with pytest.raises(ConfigRewriteError):
        enable_https(conf, "example.com", False, file_manager)
    assert conf.read_text() == "http {\n    server {\n"
