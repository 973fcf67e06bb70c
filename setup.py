from setuptools import setup, find_packages

package_name = 'ws_mqtt_gateway'

setup(
    name=package_name,
    version='1.0.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.9',
    install_requires=[
        'fastapi>=0.104.0',
        'uvicorn>=0.24.0',
        'websockets>=12.0',
        'paho-mqtt>=2.0.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.0',
            'pytest-asyncio>=0.21',
            'httpx>=0.24',
        ],
    },
    zip_safe=True,
    description='WebSocket gateway bridging browser clients to ESP32 devices over MQTT',
    license='MIT',
    entry_points={
        'console_scripts': [
            'ws_mqtt_gateway = ws_mqtt_gateway.main:main',
        ],
    },
)
