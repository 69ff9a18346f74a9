# certificate_manager.py
import logging
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import Optional
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
import ipaddress

logger = logging.getLogger(__name__)


class CertificateManager:
    def __init__(self, certs_dir: Optional[Path] = None):
        # Сертификаты храним в подпапке certificates
        if certs_dir is None:
            from core.config_manager import get_app_data_dir
            certs_dir = get_app_data_dir() / "certificates"
        certs_dir = Path(certs_dir)
        certs_dir.mkdir(parents=True, exist_ok=True)

        self.cert_path = certs_dir / "proxy.crt"
        self.key_path = certs_dir / "proxy.key"

    def generate_self_signed_certificate(self) -> bool:
        """Генерирует самоподписанный сертификат для localhost"""
        try:
            private_key = rsa.generate_private_key(
                public_exponent=65537,
                key_size=2048,
            )

            subject = issuer = x509.Name([
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Paper Reader Proxy"),
                x509.NameAttribute(NameOID.COMMON_NAME, "localhost"),
            ])

            now = datetime.now(timezone.utc)
            cert_builder = x509.CertificateBuilder().subject_name(
                subject
            ).issuer_name(
                issuer
            ).public_key(
                private_key.public_key()
            ).serial_number(
                x509.random_serial_number()
            ).not_valid_before(
                now
            ).not_valid_after(
                now + timedelta(days=365)
            )

            # Альтернативные имена для локального просмотрщика
            san = x509.SubjectAlternativeName([
                x509.DNSName("localhost"),
                x509.IPAddress(ipaddress.IPv4Address("127.0.0.1")),
            ])

            cert_builder = cert_builder.add_extension(san, critical=False)

            cert = cert_builder.sign(private_key, hashes.SHA256())

            with open(self.key_path, "wb") as key_file:
                key_file.write(private_key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.TraditionalOpenSSL,
                    encryption_algorithm=serialization.NoEncryption(),
                ))

            with open(self.cert_path, "wb") as cert_file:
                cert_file.write(cert.public_bytes(
                    encoding=serialization.Encoding.PEM
                ))

            logger.info(f"✅ Self-signed certificate created: {self.cert_path}")
            return True

        except (OSError, ValueError) as e:
            logger.error(f"❌ Ошибка генерации сертификата: {e}")
            return False

    def check_certificates_exist(self) -> bool:
        """Проверяет существование сертификатов"""
        return self.cert_path.exists() and self.key_path.exists()

    def ensure_certificates_exist(self) -> bool:
        """Убеждается, что сертификаты существуют и не истекли, и создает их при необходимости"""
        if not self.check_certificates_exist():
            logger.warning("⚠️ Сертификаты не найдены, генерируем новые...")
            return self.generate_self_signed_certificate()

        if self.get_certificate_days_remaining() == 0:
            logger.warning("⚠️ Срок действия сертификата истек, генерируем новый...")
            return self.generate_self_signed_certificate()

        return True

    def get_certificate_days_remaining(self) -> int:
        """Возвращает количество дней до истечения срока действия сертификата"""
        if not self.cert_path.exists():
            return -1

        try:
            with open(self.cert_path, "rb") as cert_file:
                cert = x509.load_pem_x509_certificate(cert_file.read())

            days_remaining = (cert.not_valid_after_utc - datetime.now(timezone.utc)).days
            return max(0, days_remaining)

        except (OSError, ValueError) as e:
            logger.error(f"Ошибка проверки срока действия сертификата: {e}")
            return -1
