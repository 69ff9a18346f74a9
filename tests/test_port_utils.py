import socket

from utils.port_utils import check_port_availability, is_port_in_use


class TestPortUtils:
    def test_free_port(self, free_port):
        assert is_port_in_use(free_port) is False
        assert check_port_availability(free_port) == (True, "Порт свободен")

    def test_busy_port(self, free_port):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", free_port))
            s.listen(1)

            assert is_port_in_use(free_port) is True
            available, message = check_port_availability(free_port)

        assert available is False
        assert str(free_port) in message
