"""Host settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="ISOFLOW_")

    # Software switch
    ovs_bridge_name: str = "br-iso"
    flow_priority: int = 100
    flow_cookie_base: int = 0x150F0000  # cookie = base + vlan_id

    # Backends
    libvirt_uri: str = "qemu:///system"
    docker_socket: str = "unix:///var/run/docker.sock"
    docker_client_timeout: int = 60

    # Per-endpoint artefacts (overlay disks, seed ISOs)
    workspace_path: str = "/var/lib/isoflow"
    vm_base_image: str = "/var/tmp/ubuntu-20.04-server-cloudimg-amd64-disk-kvm.img"
    vm_memory_mb: int = 4096
    vm_vcpus: int = 2
    vm_guest_interface: str = "enp1s0"
    vm_ssh_pubkey_path: str = "~/.ssh/id_rsa.pub"
    container_image: str = "alpine:3.20"

    # Naming and addressing profiles
    vm_prefix: str = "isoflow-vm-"
    container_prefix: str = "isoflow-ct-"
    vm_address_offset: int = 9  # first VM gets .10
    container_address_offset: int = 99  # first container gets .100
    dns_servers: list[str] = ["8.8.8.8", "8.8.4.4"]

    # Retry budgets
    attachment_retries: int = 5
    attachment_backoff: float = 1.0  # seconds, doubled per attempt
    attachment_backoff_max: float = 8.0
    flow_retries: int = 3
    flow_retry_delay: float = 0.5
    command_timeout: float = 30.0

    # Concurrency
    max_concurrent_creates: int = 4
    lock_dir: str = "/run/isoflow"

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    # HTTP agent
    agent_host: str = "127.0.0.1"
    agent_port: int = 8011


settings = Settings()
