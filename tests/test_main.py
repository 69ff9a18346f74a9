import main
from core.proxy_manager import ProxyManager


class TestCli:
    def test_parser_serve_options(self):
        args = main.build_parser().parse_args(["serve", "--port", "8099", "--endpoint", "/api/proxy"])

        assert args.command == "serve"
        assert args.port == 8099
        assert args.endpoint == "/api/proxy"

    def test_parser_check(self):
        args = main.build_parser().parse_args(["--config", "/tmp/c.json", "check"])

        assert args.command == "check"
        assert args.config == "/tmp/c.json"

    def test_check_unreachable_proxy(self, config, free_port):
        config.set("proxy.local_port", free_port)
        assert main.check(config) == 1

    def test_check_running_proxy(self, config, free_port):
        config.set("proxy.local_port", free_port)
        manager = ProxyManager(config)
        try:
            assert manager.start() is True
            assert main.check(config) == 0
        finally:
            manager.stop()
