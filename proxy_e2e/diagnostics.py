"""
Failure diagnostics

When a scenario fails the interesting evidence is usually outside the test:
what the proxy logged, which server blocks it generated, and whether the
backend it was supposed to route to was still running.
"""

from typing import Iterable, List

LOG_TAIL = 60


def collect(environment, backends: Iterable = ()) -> str:
    """Render a plain-text report for one environment and its backends"""
    sections: List[str] = [f"environment {environment.id} ({environment.state.value})",
                           f"  proxy ip: {environment.proxy_ip}  ports: {environment.ports}"]

    backends = list(backends) or list(environment.backends)
    if backends:
        sections.append("backends:")
        for backend in backends:
            hosts = ", ".join(backend.hostnames) or "-"
            sections.append(f"  {backend.name} [{backend.state.value}] ip={backend.ip} hosts={hosts}")

    config = environment.generated_config()
    if config:
        for name, content in config.items():
            sections.append(f"--- conf.d/{name} ---\n{content.rstrip()}")
    else:
        sections.append("--- conf.d is empty ---")

    sections.append(f"--- proxy log (last {LOG_TAIL} lines) ---\n{environment.proxy_logs(tail=LOG_TAIL).rstrip()}")
    return "\n".join(sections)
