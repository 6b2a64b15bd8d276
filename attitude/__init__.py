"""
attitude — IMU calibration + complementary-filter attitude pipeline

Modules
-------
vector        Vector3 helpers, angle wrap, tilt geometry
imu_driver    Sample sources: UART packet stream, I2C chip drivers
calibration   Gyro zero-bias and six-point accelerometer calibration
estimator     Complementary-filter roll/pitch/yaw estimator
storage       CalibrationSet persistence as fixed binary blobs
config        Configuration dataclasses and sensor presets
timing        Fixed-rate loop pacing
sim           Simulated IMU with known biases and noise
app           Command-line composition root
dashboard     Live attitude plot
"""
