import ssl

from core.certificate_manager import CertificateManager


class TestCertificateManager:
    def test_generates_loadable_pair(self, tmp_path):
        manager = CertificateManager(tmp_path)

        assert not manager.check_certificates_exist()
        assert manager.ensure_certificates_exist() is True
        assert manager.check_certificates_exist()

        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(certfile=str(manager.cert_path), keyfile=str(manager.key_path))

    def test_days_remaining(self, tmp_path):
        manager = CertificateManager(tmp_path)
        assert manager.get_certificate_days_remaining() == -1

        manager.generate_self_signed_certificate()
        assert manager.get_certificate_days_remaining() >= 364

    def test_existing_certificate_is_reused(self, tmp_path):
        manager = CertificateManager(tmp_path)
        manager.generate_self_signed_certificate()
        original = manager.cert_path.read_bytes()

        assert manager.ensure_certificates_exist() is True
        assert manager.cert_path.read_bytes() == original
