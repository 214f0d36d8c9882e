"""
Infra 服务模块：对接 S3、PostgreSQL、Redis、RabbitMQ 等外部/基础设施服务。
每个子目录对应一种服务，提供该服务的 client 与知识库所需的适配实现。
"""
