"""邮件通知：验证码与找回密码邮件。

未配置 SMTP 主机时进入开发模式，只记录日志不实际发送。
发送失败按指数退避重试，最终失败记为死信日志，不向调用方抛出。
"""

from __future__ import annotations

import asyncio
import logging
from email.message import EmailMessage
from typing import Protocol

import aiosmtplib
from fastapi import BackgroundTasks
from jinja2 import DictLoader, Environment, select_autoescape

logger = logging.getLogger(__name__)

_TEMPLATES = {
    "otp.html": """<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif;">
  <p>{{ name }}，您好：</p>
  <p>您的账号验证码为：</p>
  <p style="font-size: 24px; font-weight: bold; letter-spacing: 4px;">{{ code }}</p>
  <p>验证码 {{ ttl_minutes }} 分钟内有效，请勿泄露给他人。</p>
</body>
</html>
""",
    "otp.txt": "{{ name }}，您好：\n您的账号验证码为 {{ code }}，{{ ttl_minutes }} 分钟内有效。\n",
    "password_reset.html": """<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif;">
  <p>{{ name }}，您好：</p>
  <p>我们收到了重置密码请求，验证码为：</p>
  <p style="font-size: 24px; font-weight: bold; letter-spacing: 4px;">{{ code }}</p>
  {% if reset_link %}<p>也可以直接点击链接重置密码：<a href="{{ reset_link }}">{{ reset_link }}</a></p>{% endif %}
  <p>如果不是您本人操作，请忽略本邮件。</p>
</body>
</html>
""",
    "password_reset.txt": (
        "{{ name }}，您好：\n重置密码验证码为 {{ code }}。\n"
        "{% if reset_link %}重置链接：{{ reset_link }}\n{% endif %}"
        "如果不是您本人操作，请忽略本邮件。\n"
    ),
}

_env = Environment(loader=DictLoader(_TEMPLATES), autoescape=select_autoescape(["html"]))


def redact_email(address: str) -> str:
    """日志中隐藏邮箱本地部分。"""
    local, sep, domain = address.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


class EmailSender:
    """基于 aiosmtplib 的异步邮件发送器。"""

    def __init__(
        self,
        *,
        smtp_host: str | None,
        smtp_port: int = 587,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
        use_tls: bool = False,
        start_tls: bool = True,
        from_email: str = "no-reply@example.com",
        from_name: str = "E-Commerce Platform",
        max_attempts: int = 3,
        retry_base_seconds: float = 1.0,
        otp_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.use_tls = use_tls
        self.start_tls = start_tls
        self.from_email = from_email
        self.from_name = from_name
        self.max_attempts = max(1, max_attempts)
        self.retry_base_seconds = retry_base_seconds
        self.otp_ttl_minutes = otp_ttl_minutes

    @property
    def dev_mode(self) -> bool:
        return not self.smtp_host

    async def send_otp_email(self, to_email: str, name: str, code: str) -> bool:
        context = {"name": name, "code": code, "ttl_minutes": self.otp_ttl_minutes}
        return await self._send_templated(to_email, "账号验证码", "otp", context)

    async def send_password_reset_email(
        self,
        to_email: str,
        name: str,
        code: str,
        reset_link: str | None = None,
    ) -> bool:
        context = {"name": name, "code": code, "reset_link": reset_link}
        return await self._send_templated(to_email, "重置密码", "password_reset", context)

    async def _send_templated(self, to_email: str, subject: str, template: str, context: dict) -> bool:
        html_body = _env.get_template(f"{template}.html").render(**context)
        text_body = _env.get_template(f"{template}.txt").render(**context)
        if self.dev_mode:
            logger.info(
                "smtp not configured, skip sending template=%s to=%s",
                template,
                redact_email(to_email),
            )
            return True
        return await self.send_email(to_email, subject, html_body, text_body)

    def _build_message(self, to_email: str, subject: str, html_body: str, text_body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message["Subject"] = subject
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")
        return message

    async def send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """发送邮件，失败时指数退避重试，全部失败返回 False。"""
        message = self._build_message(to_email, subject, html_body, text_body)
        for attempt in range(1, self.max_attempts + 1):
            try:
                await aiosmtplib.send(
                    message,
                    hostname=self.smtp_host,
                    port=self.smtp_port,
                    username=self.smtp_user or None,
                    password=self.smtp_password or None,
                    use_tls=self.use_tls,
                    start_tls=self.start_tls and not self.use_tls,
                )
            except (aiosmtplib.SMTPException, OSError) as exc:
                logger.warning(
                    "send email failed attempt=%s/%s to=%s error=%s",
                    attempt,
                    self.max_attempts,
                    redact_email(to_email),
                    exc,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_base_seconds * (2 ** (attempt - 1)))
                continue
            logger.info("email sent to=%s subject=%s", redact_email(to_email), subject)
            return True

        # 死信：交由日志告警跟进，不影响主流程。
        logger.error(
            "email dead letter to=%s subject=%s attempts=%s",
            redact_email(to_email),
            subject,
            self.max_attempts,
        )
        return False


class OtpNotifier(Protocol):
    """业务层依赖的通知接口。"""

    def send_otp_email(self, to_email: str, name: str, code: str) -> None: ...

    def send_password_reset_email(
        self,
        to_email: str,
        name: str,
        code: str,
        reset_link: str | None = None,
    ) -> None: ...


class BackgroundOtpNotifier:
    """把邮件发送挂到响应之后的后台任务中执行。"""

    def __init__(self, sender: EmailSender, background_tasks: BackgroundTasks) -> None:
        self.sender = sender
        self.background_tasks = background_tasks

    def send_otp_email(self, to_email: str, name: str, code: str) -> None:
        self.background_tasks.add_task(self.sender.send_otp_email, to_email, name, code)

    def send_password_reset_email(
        self,
        to_email: str,
        name: str,
        code: str,
        reset_link: str | None = None,
    ) -> None:
        self.background_tasks.add_task(self.sender.send_password_reset_email, to_email, name, code, reset_link)
