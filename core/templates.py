"""Built-in Dockerfile / compose templates per application type.

Compose files use ``${APP_NAME}``, ``${EXTERNAL_PORT}``, ``${INTERNAL_PORT}``
and ``${DOCKER_NETWORK}``; they are substituted when the files are written
to the application's working directory.
"""
from typing import Dict, List, Optional

from core.schemas import AppTemplate, AppType, EnvVariable

_NETWORKS = """
networks:
  ${DOCKER_NETWORK}:
    external: true
"""


def _compose(ports: str, extra_service: str = "", body: str = "") -> str:
    return (
        "services:\n"
        "  app:\n"
        "    build:\n"
        "      context: .\n"
        "      dockerfile: Dockerfile\n"
        "    container_name: ${APP_NAME}\n"
        "    restart: unless-stopped\n"
        "    ports:\n"
        f'      - "{ports}"\n'
        f"{body}"
        "    networks:\n"
        "      - ${DOCKER_NETWORK}\n"
        f"{extra_service}"
        f"{_NETWORKS}"
    )


_ENV_FILE = "    env_file:\n      - .env\n"


PHP = AppTemplate(
    type=AppType.PHP,
    name="PHP Application",
    description="PHP application served by Apache",
    default_internal_port=80,
    default_env_variables=[
        EnvVariable(key="PHP_MEMORY_LIMIT", value="256M"),
        EnvVariable(key="PHP_MAX_EXECUTION_TIME", value="60"),
    ],
    dockerfile="""FROM php:8.2-apache

RUN apt-get update && apt-get install -y \\
    libpng-dev \\
    libjpeg-dev \\
    libfreetype6-dev \\
    zip \\
    unzip \\
    git \\
    && docker-php-ext-configure gd --with-freetype --with-jpeg \\
    && docker-php-ext-install -j$(nproc) gd pdo pdo_mysql mysqli

COPY --from=composer:latest /usr/bin/composer /usr/bin/composer

RUN a2enmod rewrite

WORKDIR /var/www/html
COPY . .

RUN chown -R www-data:www-data /var/www/html

EXPOSE 80

CMD ["apache2-foreground"]
""",
    docker_compose=_compose(
        "${EXTERNAL_PORT}:80",
        body=_ENV_FILE,
    ),
)

LARAVEL = AppTemplate(
    type=AppType.LARAVEL,
    name="Laravel Application",
    description="Laravel application on Apache with a Redis sidecar",
    default_internal_port=80,
    default_env_variables=[
        EnvVariable(key="APP_ENV", value="production"),
        EnvVariable(key="APP_DEBUG", value="false"),
        EnvVariable(key="APP_KEY", value="", is_secret=True),
        EnvVariable(key="DB_CONNECTION", value="mysql"),
        EnvVariable(key="DB_HOST", value="localhost"),
        EnvVariable(key="DB_PORT", value="3306"),
        EnvVariable(key="DB_DATABASE", value="laravel"),
        EnvVariable(key="DB_USERNAME", value="root"),
        EnvVariable(key="DB_PASSWORD", value="", is_secret=True),
        EnvVariable(key="REDIS_HOST", value="redis"),
    ],
    build_command=(
        "composer install --no-dev --optimize-autoloader && php artisan config:cache "
        "&& php artisan route:cache && php artisan view:cache"
    ),
    dockerfile="""FROM php:8.2-apache

RUN apt-get update && apt-get install -y \\
    libpng-dev \\
    libjpeg-dev \\
    libfreetype6-dev \\
    libonig-dev \\
    libxml2-dev \\
    zip \\
    unzip \\
    git \\
    && docker-php-ext-configure gd --with-freetype --with-jpeg \\
    && docker-php-ext-install -j$(nproc) gd pdo pdo_mysql mbstring exif pcntl bcmath

COPY --from=composer:latest /usr/bin/composer /usr/bin/composer

ENV APACHE_DOCUMENT_ROOT=/var/www/html/public
RUN sed -ri -e 's!/var/www/html!${APACHE_DOCUMENT_ROOT}!g' /etc/apache2/sites-available/*.conf \\
    && a2enmod rewrite

WORKDIR /var/www/html
COPY . .

RUN composer install --no-dev --optimize-autoloader

RUN chown -R www-data:www-data /var/www/html/storage /var/www/html/bootstrap/cache

EXPOSE 80

CMD ["apache2-foreground"]
""",
    docker_compose=_compose(
        "${EXTERNAL_PORT}:80",
        body=(
            "    volumes:\n"
            "      - ./storage:/var/www/html/storage\n"
            + _ENV_FILE
            + "    depends_on:\n"
            "      - redis\n"
        ),
        extra_service=(
            "\n"
            "  redis:\n"
            "    image: redis:alpine\n"
            "    container_name: ${APP_NAME}-redis\n"
            "    restart: unless-stopped\n"
            "    networks:\n"
            "      - ${DOCKER_NETWORK}\n"
        ),
    ),
)

NODEJS = AppTemplate(
    type=AppType.NODEJS,
    name="Node.js Application",
    description="Plain Node.js application",
    default_internal_port=3000,
    default_env_variables=[
        EnvVariable(key="NODE_ENV", value="production"),
        EnvVariable(key="PORT", value="3000"),
    ],
    build_command="npm ci --omit=dev",
    start_command="npm start",
    dockerfile="""FROM node:20-alpine

WORKDIR /app

COPY package*.json ./
RUN npm ci --omit=dev

COPY . .

RUN addgroup -g 1001 -S nodejs && \\
    adduser -S nodejs -u 1001
USER nodejs

EXPOSE 3000

CMD ["npm", "start"]
""",
    docker_compose=_compose(
        "${EXTERNAL_PORT}:3000",
        body="    environment:\n      - NODE_ENV=production\n      - PORT=3000\n" + _ENV_FILE,
    ),
)

NODEJS_TYPESCRIPT = AppTemplate(
    type=AppType.NODEJS_TYPESCRIPT,
    name="Node.js TypeScript Application",
    description="Node.js application compiled from TypeScript",
    default_internal_port=3000,
    default_env_variables=[
        EnvVariable(key="NODE_ENV", value="production"),
        EnvVariable(key="PORT", value="3000"),
    ],
    build_command="npm ci && npm run build",
    start_command="npm start",
    dockerfile="""FROM node:20-alpine AS builder

WORKDIR /app

COPY package*.json ./
COPY tsconfig*.json ./

RUN npm ci

COPY . .
RUN npm run build

FROM node:20-alpine

WORKDIR /app

COPY package*.json ./
RUN npm ci --omit=dev

COPY --from=builder /app/dist ./dist

RUN addgroup -g 1001 -S nodejs && \\
    adduser -S nodejs -u 1001
USER nodejs

EXPOSE 3000

CMD ["node", "dist/index.js"]
""",
    docker_compose=_compose(
        "${EXTERNAL_PORT}:3000",
        body="    environment:\n      - NODE_ENV=production\n      - PORT=3000\n" + _ENV_FILE,
    ),
)

NEXTJS = AppTemplate(
    type=AppType.NEXTJS,
    name="Next.js Application",
    description="Next.js application with a standalone production build",
    default_internal_port=3000,
    default_env_variables=[
        EnvVariable(key="NODE_ENV", value="production"),
        EnvVariable(key="NEXT_TELEMETRY_DISABLED", value="1"),
    ],
    build_command="npm ci && npm run build",
    start_command="npm start",
    dockerfile="""FROM node:20-alpine AS deps
WORKDIR /app
COPY package*.json ./
RUN npm ci

FROM node:20-alpine AS builder
WORKDIR /app
COPY --from=deps /app/node_modules ./node_modules
COPY . .

ENV NEXT_TELEMETRY_DISABLED=1

RUN npm run build

FROM node:20-alpine AS runner
WORKDIR /app

ENV NODE_ENV=production
ENV NEXT_TELEMETRY_DISABLED=1

RUN addgroup --system --gid 1001 nodejs
RUN adduser --system --uid 1001 nextjs

COPY --from=builder /app/public ./public
COPY --from=builder /app/.next/standalone ./
COPY --from=builder /app/.next/static ./.next/static

USER nextjs

EXPOSE 3000

ENV PORT=3000
ENV HOSTNAME="0.0.0.0"

CMD ["node", "server.js"]
""",
    docker_compose=_compose(
        "${EXTERNAL_PORT}:3000",
        body="    environment:\n      - NODE_ENV=production\n" + _ENV_FILE,
    ),
)

STATIC = AppTemplate(
    type=AppType.STATIC,
    name="Static Website",
    description="Static site served by Nginx",
    default_internal_port=80,
    dockerfile="""FROM nginx:alpine

COPY . /usr/share/nginx/html

EXPOSE 80

CMD ["nginx", "-g", "daemon off;"]
""",
    docker_compose=_compose("${EXTERNAL_PORT}:80"),
)

PYTHON = AppTemplate(
    type=AppType.PYTHON,
    name="Python Application",
    description="Python web application (Flask, FastAPI, ...)",
    default_internal_port=8000,
    default_env_variables=[EnvVariable(key="PYTHON_ENV", value="production")],
    build_command="pip install -r requirements.txt",
    start_command="python main.py",
    dockerfile="""FROM python:3.11-slim

WORKDIR /app

RUN apt-get update && apt-get install -y --no-install-recommends \\
    gcc \\
    && rm -rf /var/lib/apt/lists/*

COPY requirements.txt .
RUN pip install --no-cache-dir -r requirements.txt

COPY . .

RUN useradd -m -u 1001 appuser
USER appuser

EXPOSE 8000

CMD ["python", "main.py"]
""",
    docker_compose=_compose(
        "${EXTERNAL_PORT}:8000",
        body="    environment:\n      - PYTHON_ENV=production\n" + _ENV_FILE,
    ),
)

CUSTOM = AppTemplate(
    type=AppType.CUSTOM,
    name="Custom Application",
    description="Bring your own Dockerfile",
    default_internal_port=3000,
    dockerfile="""# Replace with your own build

FROM ubuntu:22.04

WORKDIR /app

COPY . .

EXPOSE 3000

CMD ["echo", "Configure your start command"]
""",
    docker_compose=_compose("${EXTERNAL_PORT}:${INTERNAL_PORT}", body=_ENV_FILE),
)


TEMPLATES: Dict[AppType, AppTemplate] = {
    t.type: t
    for t in (PHP, LARAVEL, NODEJS, NODEJS_TYPESCRIPT, NEXTJS, STATIC, PYTHON, CUSTOM)
}


def get_template(app_type) -> Optional[AppTemplate]:
    try:
        return TEMPLATES.get(AppType(app_type))
    except ValueError:
        return None


def list_templates() -> List[AppTemplate]:
    return list(TEMPLATES.values())


def render(content: str, variables: Dict[str, str]) -> str:
    """Substitute ``${NAME}`` for each entry of ``variables``; other placeholders stay."""
    for name, value in variables.items():
        content = content.replace("${" + name + "}", str(value))
    return content
