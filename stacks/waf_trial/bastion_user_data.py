# File: stacks/waf_trial/bastion_user_data.py

from aws_cdk import aws_ec2 as ec2

SSHD_CONFIG = "/etc/ssh/sshd_config"
USER_DATA_LOG = "/var/log/user-data.log"


def sshd_port_remap_commands(ssh_port: int) -> list:
    """
    Shell commands that move sshd from port 22 to ``ssh_port`` on first boot.

    The script stops at the first failing command and everything it prints
    lands in the user data log and the instance console output. There is no
    retry: a failed remap leaves the bastion unreachable over SSH, but still
    reachable through Session Manager.
    """
    return [
        "set -e",
        f"exec > >(tee {USER_DATA_LOG}) 2>&1",
        "echo \"Starting sshd port remap at $(date)\"",
        "",
        "yum update -y",
        "yum install -y openssh-server",
        "systemctl enable sshd",
        "",
        # Matches the commented default and any earlier Port line, so reruns are no-ops
        f"sed -i -E 's/^#?Port [0-9]+$/Port {ssh_port}/' {SSHD_CONFIG}",
        f"grep -q '^Port {ssh_port}$' {SSHD_CONFIG}",
        "sshd -t",
        "systemctl restart sshd",
        "",
        f"echo \"sshd listening on port {ssh_port} at $(date)\"",
    ]


def bastion_user_data(ssh_port: int) -> ec2.UserData:
    user_data = ec2.UserData.for_linux()
    user_data.add_commands(*sshd_port_remap_commands(ssh_port))
    return user_data
