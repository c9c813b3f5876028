"""请求元信息提取。"""

from fastapi import Request


def client_ip(request: Request) -> str | None:
    """从代理头或连接信息中提取客户端 IP。"""
    # 优先读取反向代理透传头，兼容网关/负载均衡场景。
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")
